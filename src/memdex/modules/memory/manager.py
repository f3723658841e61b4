"""Public memory index API and the per-process instance registry."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

from memdex.core.config import (
    AppConfig,
    MemorySearchSettings,
    MemorySource,
    resolve_default_agent_id,
    resolve_memory_search_settings,
)
from memdex.core.logging import Logger, get_logger
from memdex.core.paths import AgentPaths, resolve_agent_paths
from memdex.modules.memory.dirty import DirtyTracker
from memdex.modules.memory.errors import (
    MemoryIndexClosedError,
    MemoryPathError,
)
from memdex.modules.memory.files import (
    is_memory_path,
    normalize_rel_path,
    resolve_within,
)
from memdex.modules.memory.models import (
    FallbackStatus,
    MemorySearchResult,
    MemoryStatus,
    VectorStatus,
)
from memdex.modules.memory.providers import (
    EmbeddingProviderResult,
    ProviderRegistry,
    create_default_provider_registry,
    create_embedding_provider,
)
from memdex.modules.memory.search import QueryEngine
from memdex.modules.memory.store import IndexStore
from memdex.modules.memory.sync import SyncCoordinator, SyncReason, SyncSummary
from memdex.modules.memory.transcripts import TranscriptEvents
from memdex.modules.memory.vector import VectorExtension
from memdex.modules.memory.watcher import (
    FileWatcher,
    WatcherFactory,
    default_watcher_factory,
)

__all__ = ["MemoryIndexManager", "MemoryIndexRegistry", "registry_key"]


def registry_key(
    agent_id: str,
    workspace_dir: Path,
    settings: MemorySearchSettings,
) -> str:
    return f"{agent_id}:{workspace_dir}:{settings.cache_fingerprint()}"


class MemoryIndexManager:
    """One agent's memory index: sync triggers, search and teardown.

    Instances are normally obtained from :class:`MemoryIndexRegistry`, which
    wires the watcher, the transcript feed and the optional interval task.
    """

    def __init__(
        self,
        *,
        agent_paths: AgentPaths,
        settings: MemorySearchSettings,
        store: IndexStore,
        provider: EmbeddingProviderResult,
        logger: Logger | None = None,
        on_close: Callable[[MemoryIndexManager], None] | None = None,
    ) -> None:
        self.agent_id = agent_paths.agent_id
        self.paths = agent_paths
        self.settings = settings
        self._logger = logger or get_logger(
            __name__,
            component="memory-index",
            agent_id=agent_paths.agent_id,
        )
        self._store = store
        self._provider_result = provider
        self._provider = provider.provider
        self.dirty = DirtyTracker(
            watch_debounce_ms=settings.sync.watch_debounce_ms,
            on_watch_due=self._on_watch_due,
        )
        self._sync = SyncCoordinator(
            store=store,
            provider=self._provider,
            settings=settings,
            dirty=self.dirty,
            workspace_dir=agent_paths.workspace_dir,
            sessions_dir=agent_paths.sessions_dir,
            logger=self._logger,
        )
        self._query = QueryEngine(
            store=store,
            provider=self._provider,
            settings=settings,
            logger=self._logger,
        )
        self._warm_sessions: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._interval_task: asyncio.Task[None] | None = None
        self._watcher: FileWatcher | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._on_close = on_close
        self._closed = False

        # Nothing is known about the corpus yet.
        if settings.has_source(MemorySource.MEMORY):
            self.dirty.memory_dirty = True
        if settings.has_source(MemorySource.SESSIONS):
            self.dirty.sessions_dirty = True

    @property
    def workspace_dir(self) -> Path:
        return self.paths.workspace_dir

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Wiring
    # ------------------------------------------------------------------ #

    def attach_watcher(self, watcher: FileWatcher) -> None:
        self._watcher = watcher
        watcher.start(self.dirty.note_memory_change)

    def attach_transcripts(self, events: TranscriptEvents) -> None:
        self._unsubscribe = events.subscribe(self._on_session_update)

    def start_interval(self) -> None:
        minutes = self.settings.sync.interval_minutes
        if minutes <= 0 or self._interval_task is not None:
            return
        self._interval_task = asyncio.get_running_loop().create_task(
            self._interval_loop(minutes * 60.0)
        )

    def _on_session_update(self, session_file: Path) -> None:
        if self._closed:
            return
        resolved = Path(session_file).resolve()
        sessions_dir = self.paths.sessions_dir.resolve()
        if not resolved.is_relative_to(sessions_dir):
            return
        self.dirty.note_session_update(resolved)

    def _on_watch_due(self) -> None:
        self._spawn_background(SyncReason.WATCH)

    def _spawn_background(self, reason: SyncReason) -> None:
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(
            self._background_sync(reason)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_sync(self, reason: SyncReason) -> None:
        if self._closed:
            return
        try:
            await self._sync.sync(reason=reason)
        except Exception as exc:
            self._logger.warning(
                "memory-sync-failed",
                reason=reason.value,
                error=str(exc),
            )

    async def _interval_loop(self, seconds: float) -> None:
        while not self._closed:
            await asyncio.sleep(seconds)
            await self._background_sync(SyncReason.INTERVAL)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def _ensure_open(self) -> None:
        if self._closed:
            raise MemoryIndexClosedError(
                f"Memory index for agent {self.agent_id!r} is closed"
            )

    async def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        min_score: float | None = None,
        session_key: str | None = None,
    ) -> list[MemorySearchResult]:
        """Rank indexed chunks for ``query``.

        Warms the session and syncs dirty sources first when configured.
        An empty or unembeddable query yields an empty list.
        """

        self._ensure_open()
        await self.warm_session(session_key)
        if self.settings.sync.on_search and self.dirty.any_dirty:
            await self._sync.sync(reason=SyncReason.SEARCH)
        return await self._query.search(
            query,
            max_results=max_results,
            min_score=min_score,
        )

    async def warm_session(self, session_key: str | None = None) -> None:
        """Run one sync per session key when ``on_session_start`` is set."""

        self._ensure_open()
        if not self.settings.sync.on_session_start:
            return
        key = (session_key or "").strip()
        if key and key in self._warm_sessions:
            return
        await self._sync.sync(reason=SyncReason.SESSION_START)
        if key:
            self._warm_sessions.add(key)

    async def sync(
        self,
        *,
        reason: str = SyncReason.MANUAL,
        force: bool = False,
    ) -> SyncSummary:
        self._ensure_open()
        return await self._sync.sync(reason=reason, force=force)

    def read_file(
        self,
        rel_path: str,
        *,
        from_line: int | None = None,
        lines: int | None = None,
    ) -> dict[str, str]:
        """Return the text of a memory file, optionally a line window.

        Raises:
            MemoryPathError: If the path is empty, escapes the workspace or
                lies outside the memory path space.
        """

        self._ensure_open()
        normalized = normalize_rel_path(rel_path or "")
        if not normalized:
            raise MemoryPathError("path required")
        abs_path = resolve_within(self.workspace_dir, normalized)
        if abs_path is None:
            raise MemoryPathError("path escapes workspace")
        if not is_memory_path(normalized):
            raise MemoryPathError("path required")
        if abs_path.is_symlink() or not abs_path.is_file():
            raise MemoryPathError("path required")

        content = abs_path.read_text(encoding="utf-8", errors="replace")
        if from_line is None and lines is None:
            return {"text": content, "path": normalized}
        all_lines = content.split("\n")
        start = max(1, from_line or 1)
        count = max(1, lines if lines is not None else len(all_lines))
        window = all_lines[start - 1 : start - 1 + count]
        return {"text": "\n".join(window), "path": normalized}

    def status(self) -> MemoryStatus:
        self._ensure_open()
        sources = self.settings.sources
        vector = self._store.vector
        fallback = None
        result = self._provider_result
        if result.fallback_from is not None:
            fallback = FallbackStatus(
                from_provider=result.fallback_from,
                reason=result.fallback_reason or "",
            )
        return MemoryStatus(
            files=self._store.count_files(sources),
            chunks=self._store.count_chunks(sources),
            dirty=self.dirty.any_dirty,
            workspace_dir=self.workspace_dir,
            store_path=self._store.path,
            provider=self._provider.id,
            model=self._provider.model,
            requested_provider=result.requested_provider,
            sources=sources,
            vector=VectorStatus(
                enabled=vector.enabled,
                available=vector.available,
                extension_path=vector.extension_path,
                load_error=vector.load_error,
                dims=self._store.vector_dims,
            ),
            fallback=fallback,
        )

    async def close(self) -> None:
        """Stop triggers, wait for the running sync and release handles.

        Safe to call more than once.
        """

        if self._closed:
            return
        self._closed = True
        self.dirty.cancel()
        if self._interval_task is not None:
            self._interval_task.cancel()
            await asyncio.wait({self._interval_task})
            self._interval_task = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._watcher is not None:
            await self._watcher.close()
            self._watcher = None

        await self._sync.wait_idle()
        if self._background:
            await asyncio.wait(set(self._background))

        aclose = getattr(self._provider, "aclose", None)
        if aclose is not None:
            await aclose()
        self._store.close()
        self._logger.debug("memory-index-closed")
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None


class MemoryIndexRegistry:
    """Owns live :class:`MemoryIndexManager` instances keyed by settings.

    A registry is created by the host process (or a test) and closed with it;
    there is no module-level cache.
    """

    def __init__(
        self,
        *,
        provider_registry: ProviderRegistry | None = None,
        transcript_events: TranscriptEvents | None = None,
        watcher_factory: WatcherFactory | None = default_watcher_factory,
        logger: Logger | None = None,
    ) -> None:
        self.provider_registry = (
            provider_registry or create_default_provider_registry()
        )
        self.transcript_events = transcript_events or TranscriptEvents()
        self._watcher_factory = watcher_factory
        self._logger = logger or get_logger(
            __name__, component="memory-registry"
        )
        self._managers: dict[str, MemoryIndexManager] = {}

    def __len__(self) -> int:
        return len(self._managers)

    async def get(
        self,
        config: AppConfig,
        agent_id: str | None = None,
    ) -> MemoryIndexManager | None:
        """Return the live manager for ``agent_id``, opening one if needed.

        Returns ``None`` when memory search is disabled for the agent.
        """

        agent = agent_id or resolve_default_agent_id(config)
        settings = resolve_memory_search_settings(config, agent)
        if settings is None:
            return None
        paths = resolve_agent_paths(config, agent, settings)
        key = registry_key(agent, paths.workspace_dir, settings)
        existing = self._managers.get(key)
        if existing is not None and not existing.closed:
            return existing

        manager = self._open(paths, settings, key)
        self._managers[key] = manager
        return manager

    def _open(
        self,
        paths: AgentPaths,
        settings: MemorySearchSettings,
        key: str,
    ) -> MemoryIndexManager:
        logger = get_logger(
            "memdex.modules.memory",
            component="memory-index",
            agent_id=paths.agent_id,
        )
        vector = VectorExtension(
            enabled=settings.store.vector.enabled,
            extension_path=settings.store.vector.extension_path,
            logger=logger,
        )
        store = IndexStore(paths.store_path, vector=vector, logger=logger)
        try:
            store.ensure_schema()
            provider = create_embedding_provider(
                settings,
                registry=self.provider_registry,
                logger=logger,
            )
        except Exception:
            store.close()
            raise

        manager = MemoryIndexManager(
            agent_paths=paths,
            settings=settings,
            store=store,
            provider=provider,
            logger=logger,
            on_close=lambda closed: self._evict(key, closed),
        )
        if settings.has_source(MemorySource.SESSIONS):
            manager.attach_transcripts(self.transcript_events)
        if settings.sync.watch and self._watcher_factory is not None:
            manager.attach_watcher(
                self._watcher_factory(
                    paths.workspace_dir,
                    settings.sync.watch_debounce_ms,
                )
            )
        manager.start_interval()
        logger.info(
            "memory-index-opened",
            store=str(paths.store_path),
            workspace=str(paths.workspace_dir),
            provider=provider.provider.id,
            model=provider.provider.model,
        )
        return manager

    def _evict(self, key: str, manager: MemoryIndexManager) -> None:
        if self._managers.get(key) is manager:
            del self._managers[key]

    async def close_all(self) -> None:
        for manager in list(self._managers.values()):
            await manager.close()
        self._managers.clear()
