"""Dirty-state bookkeeping and coalescing timers for background sync."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

__all__ = [
    "SESSION_DIRTY_DEBOUNCE_MS",
    "CoalescingTimer",
    "DirtyTracker",
]

SESSION_DIRTY_DEBOUNCE_MS = 5000


class CoalescingTimer:
    """A single pending wake-up on the running event loop.

    At most one callback is ever scheduled. Re-arming either pushes the
    deadline back (``replace=True``) or keeps the existing one; pending
    wakes never stack.
    """

    def __init__(self, delay_ms: float, callback: Callable[[], None]) -> None:
        self.delay_ms = delay_ms
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, *, replace: bool = True) -> None:
        if self._handle is not None:
            if not replace:
                return
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_ms / 1000.0, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class DirtyTracker:
    """Tracks which sources need a sync and coalesces trigger bursts.

    Memory changes mark the memory source dirty immediately and (re-)arm the
    watch timer, whose expiry calls ``on_watch_due``. Session updates collect
    per-file dirtiness and flag the sessions source once the session window
    elapses; a pending window is kept rather than pushed back so a steady
    stream of appends still surfaces.
    """

    def __init__(
        self,
        *,
        watch_debounce_ms: float,
        on_watch_due: Callable[[], None],
        session_debounce_ms: float = SESSION_DIRTY_DEBOUNCE_MS,
    ) -> None:
        self.memory_dirty = False
        self.sessions_dirty = False
        self.sessions_dirty_files: set[Path] = set()
        self._watch_timer = CoalescingTimer(watch_debounce_ms, on_watch_due)
        self._session_timer = CoalescingTimer(
            session_debounce_ms, self._flag_sessions
        )

    @property
    def any_dirty(self) -> bool:
        return self.memory_dirty or self.sessions_dirty

    def note_memory_change(self) -> None:
        self.memory_dirty = True
        self._watch_timer.arm(replace=True)

    def note_session_update(self, session_file: Path) -> None:
        self.sessions_dirty_files.add(session_file)
        self._session_timer.arm(replace=False)

    def _flag_sessions(self) -> None:
        self.sessions_dirty = True

    def clear_memory(self) -> None:
        self.memory_dirty = False

    def reset_session_files(self) -> None:
        self.sessions_dirty_files.clear()

    def finish_session_sync(self, processed: set[Path]) -> None:
        """Clear the sessions flag and the files a pass just indexed.

        Files reported while the pass was running stay queued.
        """

        self.sessions_dirty = False
        self.sessions_dirty_files.difference_update(processed)

    def cancel(self) -> None:
        self._watch_timer.cancel()
        self._session_timer.cancel()
