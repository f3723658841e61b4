"""Value objects shared by the memory index components."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from memdex.core.config import MemorySource

__all__ = [
    "EmbeddingVector",
    "ChunkRecord",
    "FallbackStatus",
    "FileEntry",
    "FileFingerprint",
    "IndexMeta",
    "MemoryChunk",
    "MemorySearchResult",
    "MemoryStatus",
    "VectorStatus",
]

EmbeddingVector = tuple[float, ...]


@dataclass(frozen=True, slots=True)
class MemoryChunk:
    """Contiguous 1-based line range produced by the chunker."""

    start_line: int
    end_line: int
    text: str
    hash: str


@dataclass(frozen=True, slots=True)
class FileEntry:
    """A corpus file observed during a sync pass.

    ``content`` carries the text that is chunked: raw Markdown for memory
    files and the extracted ``User:``/``Assistant:`` transcript for sessions.
    ``hash`` is computed over that same text.
    """

    path: str
    abs_path: Path
    source: MemorySource
    hash: str
    mtime: float
    size: int
    content: str

    def fingerprint(self) -> "FileFingerprint":
        return FileFingerprint(
            path=self.path,
            source=self.source,
            hash=self.hash,
            mtime=self.mtime,
            size=self.size,
        )


@dataclass(frozen=True, slots=True)
class FileFingerprint:
    """Persisted ``files`` row."""

    path: str
    source: MemorySource
    hash: str
    mtime: float
    size: int


@dataclass(frozen=True, slots=True)
class ChunkRecord:
    """Persisted ``chunks`` row.

    An empty ``embedding`` marks a per-item provider failure; such chunks
    stay searchable through the brute-force path only.
    """

    id: str
    path: str
    source: MemorySource
    start_line: int
    end_line: int
    hash: str
    model: str
    text: str
    embedding: EmbeddingVector
    updated_at: int


@dataclass(frozen=True, slots=True)
class IndexMeta:
    """Parameters the index was built with."""

    model: str
    provider: str
    chunk_tokens: int
    chunk_overlap: int
    vector_dims: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "provider": self.provider,
            "chunk_tokens": self.chunk_tokens,
            "chunk_overlap": self.chunk_overlap,
        }
        if self.vector_dims is not None:
            payload["vector_dims"] = self.vector_dims
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IndexMeta":
        dims = payload.get("vector_dims")
        return cls(
            model=str(payload["model"]),
            provider=str(payload["provider"]),
            chunk_tokens=int(payload["chunk_tokens"]),
            chunk_overlap=int(payload["chunk_overlap"]),
            vector_dims=int(dims) if dims else None,
        )


@dataclass(frozen=True, slots=True)
class MemorySearchResult:
    """A ranked chunk returned by ``search``."""

    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: MemorySource

    def to_mapping(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": self.score,
            "snippet": self.snippet,
            "source": self.source.value,
        }


@dataclass(frozen=True, slots=True)
class VectorStatus:
    enabled: bool
    available: bool | None
    extension_path: str | None = None
    load_error: str | None = None
    dims: int | None = None


@dataclass(frozen=True, slots=True)
class FallbackStatus:
    from_provider: str
    reason: str


@dataclass(frozen=True, slots=True)
class MemoryStatus:
    """Snapshot returned by ``MemoryIndexManager.status``."""

    files: int
    chunks: int
    dirty: bool
    workspace_dir: Path
    store_path: Path
    provider: str
    model: str
    requested_provider: str
    sources: tuple[MemorySource, ...]
    vector: VectorStatus
    fallback: FallbackStatus | None = None

    def to_mapping(self) -> dict[str, Any]:
        """Return a JSON-friendly mapping for CLI output."""

        payload: dict[str, Any] = {
            "files": self.files,
            "chunks": self.chunks,
            "dirty": self.dirty,
            "workspace_dir": str(self.workspace_dir),
            "store_path": str(self.store_path),
            "provider": self.provider,
            "model": self.model,
            "requested_provider": self.requested_provider,
            "sources": [source.value for source in self.sources],
            "vector": {
                "enabled": self.vector.enabled,
                "available": self.vector.available,
                "extension_path": self.vector.extension_path,
                "load_error": self.vector.load_error,
                "dims": self.vector.dims,
            },
            "fallback": None,
        }
        if self.fallback is not None:
            payload["fallback"] = {
                "from": self.fallback.from_provider,
                "reason": self.fallback.reason,
            }
        return payload
