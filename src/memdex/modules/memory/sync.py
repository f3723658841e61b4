"""Sync state machine that keeps the index in step with the corpus."""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Awaitable, Sequence, TypeVar

from memdex.core.config import MemorySearchSettings, MemorySource
from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.chunking import chunk_text, estimate_tokens
from memdex.modules.memory.dirty import DirtyTracker
from memdex.modules.memory.errors import EmbeddingTimeoutError
from memdex.modules.memory.files import build_memory_entry, list_memory_files
from memdex.modules.memory.models import (
    ChunkRecord,
    EmbeddingVector,
    FileEntry,
    IndexMeta,
    MemoryChunk,
)
from memdex.modules.memory.providers import EmbeddingProvider
from memdex.modules.memory.store import IndexStore, now_ms
from memdex.modules.memory.transcripts import (
    build_session_entry,
    list_session_files,
    session_rel_path,
)

__all__ = [
    "EMBEDDING_BATCH_MAX_TOKENS",
    "SyncCoordinator",
    "SyncReason",
    "SyncSummary",
    "build_embedding_batches",
    "call_with_timeout",
    "chunk_id",
]

EMBEDDING_BATCH_MAX_TOKENS = 8000

T = TypeVar("T")


class SyncReason(StrEnum):
    """Why a sync was requested; some reasons skip session indexing."""

    MANUAL = "manual"
    CLI = "cli"
    SEARCH = "search"
    SESSION_START = "session-start"
    WATCH = "watch"
    INTERVAL = "interval"


# Session indexing is deferred for these triggers unless forced.
_DEFERRED_SESSION_REASONS = frozenset(
    {SyncReason.SESSION_START.value, SyncReason.WATCH.value}
)


@dataclass(frozen=True, slots=True)
class SyncSummary:
    reason: str
    full_reindex: bool
    memory_synced: bool
    sessions_synced: bool
    files_indexed: int
    files_pruned: int


def chunk_id(
    *,
    source: MemorySource,
    path: str,
    chunk: MemoryChunk,
    model: str,
) -> str:
    """Deterministic chunk identifier.

    Example:
        >>> from memdex.modules.memory.models import MemoryChunk
        >>> chunk = MemoryChunk(1, 2, "hi", "abc")
        >>> len(chunk_id(
        ...     source=MemorySource.MEMORY, path="MEMORY.md",
        ...     chunk=chunk, model="m",
        ... ))
        64
    """

    raw = (
        f"{source.value}:{path}:{chunk.start_line}:{chunk.end_line}:"
        f"{chunk.hash}:{model}"
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_embedding_batches(
    texts: Sequence[str],
    *,
    max_tokens: int = EMBEDDING_BATCH_MAX_TOKENS,
) -> list[list[int]]:
    """Group text indexes so each batch stays within ``max_tokens``.

    A single text larger than the budget is sent on its own.

    Example:
        >>> texts = ["a" * 40, "b" * 40, "c" * 40]
        >>> build_embedding_batches(texts, max_tokens=20)
        [[0, 1], [2]]
    """

    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0
    for index, text in enumerate(texts):
        tokens = estimate_tokens(text)
        if current and current_tokens + tokens > max_tokens:
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(index)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


async def call_with_timeout(
    awaitable: Awaitable[T],
    *,
    timeout: float | None,
    provider_id: str,
) -> T:
    """Await a provider call, translating expiry into a typed error."""

    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        raise EmbeddingTimeoutError(provider_id, timeout) from exc


class SyncCoordinator:
    """Runs single-flight sync passes for one memory index.

    Concurrent callers share the in-flight pass and observe its outcome,
    including failures. Dirty flags are cleared only after the matching
    source finished, so an aborted pass is retried by the next trigger.
    """

    def __init__(
        self,
        *,
        store: IndexStore,
        provider: EmbeddingProvider,
        settings: MemorySearchSettings,
        dirty: DirtyTracker,
        workspace_dir: Path,
        sessions_dir: Path,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings
        self._dirty = dirty
        self._workspace_dir = workspace_dir
        self._sessions_dir = sessions_dir
        self._logger = logger or get_logger(__name__, component="memory-sync")
        self._inflight: asyncio.Task[SyncSummary] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    async def sync(
        self,
        *,
        reason: str = SyncReason.MANUAL,
        force: bool = False,
    ) -> SyncSummary:
        """Run a sync pass, or join the one already running."""

        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._run(str(reason), force))
            self._inflight = task
            task.add_done_callback(self._release)
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Block until no pass is running; failures are left to callers."""

        task = self._inflight
        if task is not None:
            await asyncio.wait({task})

    def _release(self, task: asyncio.Task[SyncSummary]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()  # marks the failure as observed

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #

    def _full_reindex_reason(
        self,
        meta: IndexMeta | None,
        *,
        force: bool,
        vector_ready: bool,
    ) -> str | None:
        if force:
            return "forced"
        if meta is None:
            return "missing-meta"
        if meta.model != self._provider.model:
            return "model-changed"
        if meta.provider != self._provider.id:
            return "provider-changed"
        chunking = self._settings.chunking
        if (
            meta.chunk_tokens != chunking.tokens
            or meta.chunk_overlap != chunking.overlap
        ):
            return "chunking-changed"
        if vector_ready and meta.vector_dims is None:
            return "vector-dims-missing"
        return None

    def _should_sync_sessions(
        self,
        *,
        reason: str,
        force: bool,
        full: bool,
    ) -> bool:
        if not self._settings.has_source(MemorySource.SESSIONS):
            return False
        if force:
            return True
        if reason in _DEFERRED_SESSION_REASONS:
            return False
        return self._dirty.sessions_dirty or full

    async def _run(self, reason: str, force: bool) -> SyncSummary:
        store = self._store
        meta = store.read_meta()
        vector_ready = self._vector_ready()
        full_reason = self._full_reindex_reason(
            meta,
            force=force,
            vector_ready=vector_ready,
        )
        full = full_reason is not None
        self._logger.debug(
            "memory-sync-start",
            reason=reason,
            force=force,
            full_reindex=full,
        )
        if full:
            self._logger.info(
                "memory-full-reindex",
                reason=reason,
                cause=full_reason,
            )
            store.reset()
            self._dirty.reset_session_files()

        indexed = 0
        pruned = 0

        sync_memory = self._settings.has_source(MemorySource.MEMORY) and (
            force or full or self._dirty.memory_dirty
        )
        if sync_memory:
            # Changes reported while the pass runs must stay flagged.
            self._dirty.clear_memory()
            try:
                counts = await self._sync_memory(full=full)
            except BaseException:
                self._dirty.memory_dirty = True
                raise
            indexed += counts[0]
            pruned += counts[1]

        sync_sessions = self._should_sync_sessions(
            reason=reason,
            force=force,
            full=full,
        )
        if sync_sessions:
            processed = set(self._dirty.sessions_dirty_files)
            counts = await self._sync_sessions(full=full, targets=processed)
            indexed += counts[0]
            pruned += counts[1]
            self._dirty.finish_session_sync(processed)
        elif full and self._settings.has_source(MemorySource.SESSIONS):
            self._dirty.sessions_dirty = True

        if sync_memory or sync_sessions or full:
            updated = IndexMeta(
                model=self._provider.model,
                provider=self._provider.id,
                chunk_tokens=self._settings.chunking.tokens,
                chunk_overlap=self._settings.chunking.overlap,
                vector_dims=store.vector_dims if vector_ready else None,
            )
            if full or updated != meta:
                store.write_meta(updated)

        summary = SyncSummary(
            reason=reason,
            full_reindex=full,
            memory_synced=sync_memory,
            sessions_synced=sync_sessions,
            files_indexed=indexed,
            files_pruned=pruned,
        )
        self._logger.info(
            "memory-sync-complete",
            reason=reason,
            full_reindex=full,
            memory_synced=sync_memory,
            sessions_synced=sync_sessions,
            files_indexed=indexed,
            files_pruned=pruned,
        )
        return summary

    def _vector_ready(self) -> bool:
        return self._store.vector.load(self._store.connection)

    # ------------------------------------------------------------------ #
    # Sources
    # ------------------------------------------------------------------ #

    async def _sync_memory(self, *, full: bool) -> tuple[int, int]:
        indexed = 0
        active: set[str] = set()
        for abs_path in list_memory_files(self._workspace_dir):
            try:
                entry = build_memory_entry(abs_path, self._workspace_dir)
            except OSError as exc:
                self._logger.warning(
                    "memory-file-read-failed",
                    path=str(abs_path),
                    error=str(exc),
                )
                continue
            active.add(entry.path)
            if await self._maybe_index(entry, full=full):
                indexed += 1
        pruned = self._prune(MemorySource.MEMORY, active)
        return indexed, pruned

    async def _sync_sessions(
        self,
        *,
        full: bool,
        targets: set[Path],
    ) -> tuple[int, int]:
        index_all = full or not targets
        indexed = 0
        active: set[str] = set()
        for abs_path in list_session_files(self._sessions_dir):
            entry_path = abs_path.resolve()
            if not index_all and entry_path not in targets:
                active.add(session_rel_path(abs_path))
                continue
            try:
                entry = build_session_entry(abs_path)
            except OSError as exc:
                self._logger.warning(
                    "memory-session-read-failed",
                    path=str(abs_path),
                    error=str(exc),
                )
                continue
            active.add(entry.path)
            if await self._maybe_index(entry, full=full):
                indexed += 1
        pruned = self._prune(MemorySource.SESSIONS, active)
        return indexed, pruned

    async def _maybe_index(self, entry: FileEntry, *, full: bool) -> bool:
        if not full:
            existing = self._store.get_file_hash(entry.path, entry.source)
            if existing == entry.hash:
                return False
        await self._index_file(entry)
        return True

    def _prune(self, source: MemorySource, active: set[str]) -> int:
        pruned = 0
        for path in self._store.list_file_paths(source):
            if path in active:
                continue
            self._store.delete_file(path, source)
            pruned += 1
            self._logger.debug(
                "memory-file-pruned",
                path=path,
                source=source.value,
            )
        return pruned

    # ------------------------------------------------------------------ #
    # Indexing
    # ------------------------------------------------------------------ #

    async def _index_file(self, entry: FileEntry) -> None:
        chunking = self._settings.chunking
        chunks = chunk_text(
            entry.content,
            tokens=chunking.tokens,
            overlap=chunking.overlap,
        )
        if not chunks:
            self._store.delete_file(entry.path, entry.source)
            self._logger.debug(
                "memory-file-empty",
                path=entry.path,
                source=entry.source.value,
            )
            return

        embeddings = await self._embed_chunks(chunks)
        sample = next((vector for vector in embeddings if vector), None)
        mirror = sample is not None and self._store.ensure_vector_table(
            len(sample)
        )

        model = self._provider.model
        updated_at = now_ms()
        records = [
            ChunkRecord(
                id=chunk_id(
                    source=entry.source,
                    path=entry.path,
                    chunk=chunk,
                    model=model,
                ),
                path=entry.path,
                source=entry.source,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                hash=chunk.hash,
                model=model,
                text=chunk.text,
                embedding=embedding,
                updated_at=updated_at,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        self._store.replace_file(
            entry.fingerprint(),
            records,
            mirror_vectors=mirror,
        )
        self._logger.debug(
            "memory-file-indexed",
            path=entry.path,
            source=entry.source.value,
            chunks=len(records),
            failed=sum(1 for record in records if not record.embedding),
        )

    async def _embed_chunks(
        self,
        chunks: Sequence[MemoryChunk],
    ) -> list[EmbeddingVector]:
        texts = [chunk.text for chunk in chunks]
        vectors: list[EmbeddingVector] = [() for _ in texts]
        timeout = self._settings.sync.embed_timeout_seconds
        for batch in build_embedding_batches(texts):
            result = await call_with_timeout(
                self._provider.embed_batch([texts[i] for i in batch]),
                timeout=timeout,
                provider_id=self._provider.id,
            )
            for offset, index in enumerate(batch):
                if offset < len(result) and result[offset]:
                    vectors[index] = tuple(result[offset])
        return vectors
