"""Session transcript extraction and the in-process update feed."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Iterable

from memdex.core.config import MemorySource
from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.chunking import hash_text
from memdex.modules.memory.models import FileEntry

__all__ = [
    "SESSION_PATH_PREFIX",
    "TranscriptEvents",
    "TranscriptListener",
    "build_session_entry",
    "extract_session_text",
    "list_session_files",
    "normalize_session_text",
    "session_rel_path",
]

SESSION_PATH_PREFIX = "sessions"
_SESSION_SUFFIX = ".jsonl"
_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}
_NEWLINE_RUNS = re.compile(r"\s*\n+\s*")
_WHITESPACE_RUNS = re.compile(r"\s+")

TranscriptListener = Callable[[Path], None]


def normalize_session_text(value: str) -> str:
    """Collapse newlines and whitespace runs into single spaces.

    Example:
        >>> normalize_session_text("  hello\\n\\n   world\\t !  ")
        'hello world !'
    """

    collapsed = _NEWLINE_RUNS.sub(" ", value)
    return _WHITESPACE_RUNS.sub(" ", collapsed).strip()


def _message_text(content: Any) -> str | None:
    if isinstance(content, str):
        normalized = normalize_session_text(content)
        return normalized or None
    if not isinstance(content, list):
        return None
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if not isinstance(text, str):
            continue
        normalized = normalize_session_text(text)
        if normalized:
            parts.append(normalized)
    if not parts:
        return None
    return " ".join(parts)


def extract_session_text(lines: Iterable[str]) -> str:
    """Render JSONL transcript records as ``User:``/``Assistant:`` lines.

    Only records with ``type == "message"`` and a user or assistant role
    contribute. Content may be a plain string or a list of text blocks.
    Malformed lines are skipped.
    """

    rendered: list[str] = []
    for raw in lines:
        if not raw.strip():
            continue
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict) or record.get("type") != "message":
            continue
        message = record.get("message")
        if not isinstance(message, dict):
            continue
        label = _ROLE_LABELS.get(message.get("role"))
        if label is None:
            continue
        text = _message_text(message.get("content"))
        if text:
            rendered.append(f"{label}: {text}")
    return "\n".join(rendered)


def session_rel_path(abs_path: Path) -> str:
    """Map a transcript to its stored relative path.

    Example:
        >>> session_rel_path(Path("/x/agents/main/sessions/abc.jsonl"))
        'sessions/abc.jsonl'
    """

    return f"{SESSION_PATH_PREFIX}/{abs_path.name}"


def list_session_files(sessions_dir: Path) -> list[Path]:
    """Return ``*.jsonl`` files directly inside ``sessions_dir``."""

    if not sessions_dir.is_dir():
        return []
    return sorted(
        path
        for path in sessions_dir.iterdir()
        if path.suffix == _SESSION_SUFFIX and path.is_file()
    )


def build_session_entry(abs_path: Path) -> FileEntry:
    """Read a transcript and fingerprint its extracted text.

    Raises:
        OSError: If the transcript cannot be read.
    """

    stat = abs_path.stat()
    raw = abs_path.read_text(encoding="utf-8", errors="replace")
    content = extract_session_text(raw.splitlines())
    return FileEntry(
        path=session_rel_path(abs_path),
        abs_path=abs_path,
        source=MemorySource.SESSIONS,
        hash=hash_text(content),
        mtime=stat.st_mtime,
        size=stat.st_size,
        content=content,
    )


class TranscriptEvents:
    """Publish/subscribe feed announcing updated session transcripts.

    Writers call :meth:`emit` after appending to a transcript; every memory
    index subscribed for the owning agent marks the file dirty.

    Example:
        >>> events = TranscriptEvents()
        >>> seen = []
        >>> unsubscribe = events.subscribe(seen.append)
        >>> events.emit(Path("/tmp/s.jsonl"))
        >>> unsubscribe()
        >>> events.emit(Path("/tmp/t.jsonl"))
        >>> [p.name for p in seen]
        ['s.jsonl']
    """

    def __init__(self, *, logger: Logger | None = None) -> None:
        self._listeners: list[TranscriptListener] = []
        self._logger = logger or get_logger(
            __name__, component="transcript-events"
        )

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, session_file: Path | str) -> None:
        path = Path(session_file)
        for listener in list(self._listeners):
            try:
                listener(path)
            except Exception as exc:
                self._logger.warning(
                    "transcript-listener-failed",
                    session_file=str(path),
                    error=str(exc),
                )

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
