"""Memory file space: enumeration, fingerprints and path normalization."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

from memdex.core.config import MemorySource
from memdex.modules.memory.chunking import hash_text
from memdex.modules.memory.models import FileEntry

__all__ = [
    "MEMORY_DIRNAME",
    "ROOT_MEMORY_FILES",
    "build_memory_entry",
    "is_memory_path",
    "list_memory_files",
    "normalize_rel_path",
    "resolve_within",
]

ROOT_MEMORY_FILES = ("MEMORY.md", "memory.md")
MEMORY_DIRNAME = "memory"
_MARKDOWN_SUFFIX = ".md"


def normalize_rel_path(value: str) -> str:
    """Normalize a caller-supplied relative path to POSIX form.

    Example:
        >>> normalize_rel_path("  ./memory\\\\notes.md ")
        'memory/notes.md'
    """

    cleaned = value.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def is_memory_path(rel_path: str) -> bool:
    """Return whether ``rel_path`` names a file in the memory space.

    Example:
        >>> is_memory_path("MEMORY.md"), is_memory_path("memory/a/b.md")
        (True, True)
        >>> is_memory_path("notes.md")
        False
    """

    normalized = normalize_rel_path(rel_path)
    if not normalized:
        return False
    if normalized in ROOT_MEMORY_FILES:
        return True
    return normalized.startswith(f"{MEMORY_DIRNAME}/")


def resolve_within(root: Path, rel_path: str) -> Path | None:
    """Join ``rel_path`` onto ``root`` lexically.

    Returns ``None`` when the result escapes ``root``. No filesystem access
    happens here, so traversal is rejected before any file is touched.
    """

    if not rel_path or PurePosixPath(rel_path).is_absolute():
        return None
    base = os.path.normpath(os.path.abspath(root))
    candidate = os.path.normpath(os.path.join(base, rel_path))
    if not candidate.startswith(base + os.sep):
        return None
    return Path(candidate)


def _is_regular_file(path: Path) -> bool:
    return path.is_file() and not path.is_symlink()


def _walk_markdown(directory: Path) -> list[Path]:
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        current = Path(dirpath)
        dirnames[:] = sorted(
            name for name in dirnames if not (current / name).is_symlink()
        )
        for name in sorted(filenames):
            if not name.endswith(_MARKDOWN_SUFFIX):
                continue
            candidate = current / name
            if _is_regular_file(candidate):
                found.append(candidate)
    return found


def list_memory_files(workspace_dir: Path) -> list[Path]:
    """Return absolute paths of every memory file under ``workspace_dir``.

    Recognized files are ``MEMORY.md``, ``memory.md`` and any ``*.md``
    beneath ``memory/``. Symlinks are skipped and case-insensitive aliases
    are de-duplicated by real path.
    """

    candidates: list[Path] = []
    for name in ROOT_MEMORY_FILES:
        path = workspace_dir / name
        if _is_regular_file(path):
            candidates.append(path)

    memory_dir = workspace_dir / MEMORY_DIRNAME
    if memory_dir.is_dir() and not memory_dir.is_symlink():
        candidates.extend(_walk_markdown(memory_dir))

    seen: set[str] = set()
    unique: list[Path] = []
    for path in candidates:
        key = os.path.realpath(path)
        if key in seen:
            continue
        seen.add(key)
        unique.append(path)
    return unique


def build_memory_entry(abs_path: Path, workspace_dir: Path) -> FileEntry:
    """Read and fingerprint one memory file."""

    stat = abs_path.stat()
    content = abs_path.read_text(encoding="utf-8", errors="replace")
    rel_path = abs_path.relative_to(workspace_dir).as_posix()
    return FileEntry(
        path=rel_path,
        abs_path=abs_path,
        source=MemorySource.MEMORY,
        hash=hash_text(content),
        mtime=stat.st_mtime,
        size=stat.st_size,
        content=content,
    )
