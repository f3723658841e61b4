"""Memory index and retrieval primitives."""

from __future__ import annotations

from .chunking import chunk_text, hash_text
from .errors import (
    EmbeddingProviderError,
    EmbeddingTimeoutError,
    MemoryIndexClosedError,
    MemoryIndexError,
    MemoryPathError,
    MemorySyncError,
)
from .manager import MemoryIndexManager, MemoryIndexRegistry
from .models import (
    ChunkRecord,
    FileFingerprint,
    IndexMeta,
    MemoryChunk,
    MemorySearchResult,
    MemoryStatus,
    VectorStatus,
)
from .providers import (
    EmbeddingProvider,
    ProviderInitContext,
    ProviderRegistry,
    create_default_provider_registry,
)
from .sync import SyncReason, SyncSummary
from .transcripts import TranscriptEvents

__all__ = [
    "chunk_text",
    "hash_text",
    "EmbeddingProviderError",
    "EmbeddingTimeoutError",
    "MemoryIndexClosedError",
    "MemoryIndexError",
    "MemoryPathError",
    "MemorySyncError",
    "MemoryIndexManager",
    "MemoryIndexRegistry",
    "ChunkRecord",
    "FileFingerprint",
    "IndexMeta",
    "MemoryChunk",
    "MemorySearchResult",
    "MemoryStatus",
    "VectorStatus",
    "EmbeddingProvider",
    "ProviderInitContext",
    "ProviderRegistry",
    "create_default_provider_registry",
    "SyncReason",
    "SyncSummary",
    "TranscriptEvents",
]
