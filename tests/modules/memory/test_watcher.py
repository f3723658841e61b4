from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from watchfiles import Change

from memdex.modules.memory.watcher import (
    FileWatcher,
    WatchfilesWatcher,
    default_watcher_factory,
    memory_watch_filter,
)


@pytest.mark.parametrize(
    ("change", "rel_path", "accepted"),
    [
        (Change.modified, "MEMORY.md", True),
        (Change.added, "memory.md", True),
        (Change.modified, "memory/notes.md", True),
        (Change.added, "memory/deep/nested.md", True),
        (Change.added, "memory", True),
        (Change.deleted, "memory/archive", True),
        (Change.modified, "memory/image.png", False),
        (Change.modified, "README.md", False),
        (Change.modified, "notes/memory/x.md", False),
    ],
)
def test_memory_watch_filter(
    tmp_path: Path,
    change: Change,
    rel_path: str,
    accepted: bool,
) -> None:
    accept = memory_watch_filter(tmp_path)

    assert accept(change, str(tmp_path / rel_path)) is accepted


def test_memory_watch_filter_ignores_other_roots(tmp_path: Path) -> None:
    accept = memory_watch_filter(tmp_path / "workspace")

    assert not accept(Change.modified, str(tmp_path / "MEMORY.md"))


def test_memory_watch_filter_follows_symlinked_workspace(
    tmp_path: Path,
) -> None:
    (tmp_path / "real").mkdir()
    real = (tmp_path / "real").resolve()
    link = tmp_path / "link"
    link.symlink_to(real, target_is_directory=True)

    accept = memory_watch_filter(link)

    assert accept(Change.modified, str(real / "MEMORY.md"))
    assert accept(Change.added, str(link / "memory" / "notes.md"))
    assert not accept(Change.modified, str(real / "README.md"))


def test_default_factory_builds_a_watchfiles_watcher(tmp_path: Path) -> None:
    watcher = default_watcher_factory(tmp_path, 250)

    assert isinstance(watcher, WatchfilesWatcher)
    assert isinstance(watcher, FileWatcher)
    assert watcher.debounce_ms == 250


def test_missing_workspace_is_skipped(tmp_path: Path) -> None:
    calls: list[int] = []

    async def scenario() -> None:
        watcher = WatchfilesWatcher(tmp_path / "absent", 10)
        watcher.start(lambda: calls.append(1))
        await watcher.close()

    asyncio.run(scenario())

    assert calls == []


def test_close_stops_a_running_watcher(tmp_path: Path) -> None:
    async def scenario() -> bool:
        watcher = WatchfilesWatcher(tmp_path, 10)
        watcher.start(lambda: None)
        await asyncio.sleep(0.05)
        await asyncio.wait_for(watcher.close(), timeout=10)
        return watcher._task is None

    assert asyncio.run(scenario())
