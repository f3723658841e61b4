"""Filesystem watching for the memory file space."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from watchfiles import Change, awatch

from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.files import is_memory_path

__all__ = [
    "ChangeCallback",
    "FileWatcher",
    "WatcherFactory",
    "WatchfilesWatcher",
    "default_watcher_factory",
    "memory_watch_filter",
]

ChangeCallback = Callable[[], None]


@runtime_checkable
class FileWatcher(Protocol):
    """Reports memory file changes until closed."""

    def start(self, on_change: ChangeCallback) -> None:
        ...

    async def close(self) -> None:
        ...


WatcherFactory = Callable[[Path, int], FileWatcher]


def memory_watch_filter(workspace_dir: Path) -> Callable[[Change, str], bool]:
    """Build a ``watchfiles`` filter accepting only memory files.

    Example:
        >>> from pathlib import Path
        >>> accept = memory_watch_filter(Path("/ws"))
        >>> accept(Change.modified, "/ws/memory/notes.md")
        True
        >>> accept(Change.modified, "/ws/README.md")
        False
    """

    root = Path(workspace_dir)
    # Events may arrive through either side of a symlinked workspace.
    roots = [root]
    resolved = root.resolve()
    if resolved != root:
        roots.append(resolved)

    def _relative(path: str) -> str | None:
        candidate = Path(path)
        for base in roots:
            try:
                return candidate.relative_to(base).as_posix()
            except ValueError:
                continue
        return None

    def _accept(change: Change, path: str) -> bool:
        rel_path = _relative(path)
        if rel_path is None:
            return False
        if rel_path == "memory":
            return True
        if not is_memory_path(rel_path):
            return False
        if rel_path.startswith("memory/"):
            return rel_path.endswith(".md") or change is Change.deleted
        return True

    return _accept


class WatchfilesWatcher:
    """Runs :func:`watchfiles.awatch` over a workspace in a background task.

    ``watchfiles`` already groups bursts of events within ``debounce_ms``;
    the dirty tracker adds its own coalescing on top.
    """

    def __init__(
        self,
        workspace_dir: Path,
        debounce_ms: int,
        *,
        logger: Logger | None = None,
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.debounce_ms = debounce_ms
        self._logger = logger or get_logger(
            __name__, component="memory-watch"
        )
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self, on_change: ChangeCallback) -> None:
        if self._task is not None:
            return
        if not self.workspace_dir.is_dir():
            self._logger.info(
                "memory-watch-skipped",
                workspace=str(self.workspace_dir),
                reason="missing-workspace",
            )
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(on_change)
        )

    async def _run(self, on_change: ChangeCallback) -> None:
        accept = memory_watch_filter(self.workspace_dir)
        try:
            async for changes in awatch(
                self.workspace_dir,
                watch_filter=accept,
                debounce=max(1, self.debounce_ms),
                stop_event=self._stop,
            ):
                self._logger.debug(
                    "memory-watch-changes",
                    count=len(changes),
                )
                on_change()
        except OSError as exc:
            self._logger.warning(
                "memory-watch-failed",
                workspace=str(self.workspace_dir),
                error=str(exc),
            )

    async def close(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=5)
        except TimeoutError:
            self._logger.warning(
                "memory-watch-stop-timeout",
                workspace=str(self.workspace_dir),
            )


def default_watcher_factory(
    workspace_dir: Path,
    debounce_ms: int,
) -> FileWatcher:
    return WatchfilesWatcher(workspace_dir, debounce_ms)
