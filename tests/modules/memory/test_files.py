"""Tests for :mod:`memdex.modules.memory.files`."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from memdex.core.config import MemorySource
from memdex.modules.memory.chunking import hash_text
from memdex.modules.memory.files import (
    build_memory_entry,
    is_memory_path,
    list_memory_files,
    normalize_rel_path,
    resolve_within,
)


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("MEMORY.md", "MEMORY.md"),
        ("  ./memory/a.md ", "memory/a.md"),
        ("memory\\nested\\b.md", "memory/nested/b.md"),
        ("././memory/c.md", "memory/c.md"),
    ],
)
def test_normalize_rel_path(raw: str, expected: str) -> None:
    assert normalize_rel_path(raw) == expected


@pytest.mark.parametrize(
    ("rel_path", "expected"),
    [
        ("MEMORY.md", True),
        ("memory.md", True),
        ("memory/2024-01-01.md", True),
        ("memory/deep/notes.md", True),
        ("notes.md", False),
        ("", False),
        ("memoryfoo/x.md", False),
    ],
)
def test_is_memory_path(rel_path: str, expected: bool) -> None:
    assert is_memory_path(rel_path) is expected


def test_resolve_within_rejects_escapes(tmp_path: Path) -> None:
    root = tmp_path / "ws"
    root.mkdir()

    assert resolve_within(root, "memory/a.md") == root / "memory" / "a.md"
    assert resolve_within(root, "../outside.md") is None
    assert resolve_within(root, "memory/../../outside.md") is None
    assert resolve_within(root, "/etc/passwd") is None
    assert resolve_within(root, "") is None


def test_list_memory_files_finds_root_and_nested_markdown(
    tmp_path: Path,
) -> None:
    workspace = tmp_path / "ws"
    _write(workspace / "MEMORY.md", "root")
    _write(workspace / "memory" / "a.md", "a")
    _write(workspace / "memory" / "sub" / "b.md", "b")
    _write(workspace / "memory" / "skip.txt", "nope")
    _write(workspace / "README.md", "not memory")

    found = {
        path.relative_to(workspace).as_posix()
        for path in list_memory_files(workspace)
    }

    assert found == {"MEMORY.md", "memory/a.md", "memory/sub/b.md"}


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks required")
def test_list_memory_files_skips_symlinks(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    target = _write(tmp_path / "elsewhere.md", "secret")
    _write(workspace / "memory" / "real.md", "real")
    try:
        (workspace / "memory" / "link.md").symlink_to(target)
    except OSError:
        pytest.skip("cannot create symlinks here")

    found = [p.name for p in list_memory_files(workspace)]

    assert found == ["real.md"]


def test_list_memory_files_handles_missing_workspace(tmp_path: Path) -> None:
    assert list_memory_files(tmp_path / "missing") == []


def test_build_memory_entry_fingerprints_content(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    path = _write(workspace / "memory" / "day.md", "hello\nworld")

    entry = build_memory_entry(path, workspace)

    assert entry.path == "memory/day.md"
    assert entry.source is MemorySource.MEMORY
    assert entry.hash == hash_text("hello\nworld")
    assert entry.size == len("hello\nworld")
    fingerprint = entry.fingerprint()
    assert fingerprint.path == entry.path
    assert fingerprint.hash == entry.hash
