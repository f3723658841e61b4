"""Tests for :mod:`memdex.modules.memory.store`."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Callable, Iterator

import pytest

from memdex.core.config import MemorySource
from memdex.modules.memory.errors import MemoryIndexClosedError
from memdex.modules.memory.models import (
    ChunkRecord,
    FileFingerprint,
    IndexMeta,
)
from memdex.modules.memory.store import VECTOR_TABLE, IndexStore
from memdex.modules.memory.vector import VectorExtension


def _fingerprint(
    path: str,
    source: MemorySource = MemorySource.MEMORY,
    digest: str = "h1",
) -> FileFingerprint:
    return FileFingerprint(
        path=path,
        source=source,
        hash=digest,
        mtime=1.0,
        size=10,
    )


def _chunk(
    chunk_id: str,
    path: str,
    *,
    source: MemorySource = MemorySource.MEMORY,
    model: str = "m",
    embedding: tuple[float, ...] = (1.0, 0.0, 0.0),
    start: int = 1,
) -> ChunkRecord:
    return ChunkRecord(
        id=chunk_id,
        path=path,
        source=source,
        start_line=start,
        end_line=start,
        hash=f"hash-{chunk_id}",
        model=model,
        text=f"text {chunk_id}",
        embedding=embedding,
        updated_at=0,
    )


@pytest.fixture
def store(
    tmp_path: Path,
    make_store: Callable[..., IndexStore],
) -> Iterator[IndexStore]:
    index = make_store(tmp_path / "index.sqlite")
    yield index
    index.close()


def test_meta_round_trip(store: IndexStore) -> None:
    assert store.read_meta() is None

    meta = IndexMeta(
        model="m",
        provider="p",
        chunk_tokens=400,
        chunk_overlap=80,
        vector_dims=3,
    )
    store.write_meta(meta)

    assert store.read_meta() == meta


def test_unreadable_meta_is_treated_as_missing(store: IndexStore) -> None:
    with store.connection as conn:
        conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?)",
            ("memory_index_meta_v1", "{not json"),
        )

    assert store.read_meta() is None


def test_replace_file_swaps_chunks_and_fingerprint(store: IndexStore) -> None:
    store.replace_file(
        _fingerprint("MEMORY.md"),
        [_chunk("a", "MEMORY.md"), _chunk("b", "MEMORY.md", start=2)],
        mirror_vectors=False,
    )
    store.replace_file(
        _fingerprint("MEMORY.md", digest="h2"),
        [_chunk("c", "MEMORY.md")],
        mirror_vectors=False,
    )

    chunks = store.list_chunks(model="m", sources=[MemorySource.MEMORY])
    assert [chunk.id for chunk in chunks] == ["c"]
    assert store.get_file_hash("MEMORY.md", MemorySource.MEMORY) == "h2"
    assert store.count_files([MemorySource.MEMORY]) == 1


def test_same_path_is_tracked_per_source(store: IndexStore) -> None:
    store.replace_file(
        _fingerprint("x.md"),
        [_chunk("m1", "x.md")],
        mirror_vectors=False,
    )
    store.replace_file(
        _fingerprint("x.md", source=MemorySource.SESSIONS),
        [_chunk("s1", "x.md", source=MemorySource.SESSIONS)],
        mirror_vectors=False,
    )

    store.delete_file("x.md", MemorySource.MEMORY)

    assert store.count_files([MemorySource.MEMORY]) == 0
    assert store.count_files([MemorySource.SESSIONS]) == 1
    assert store.count_chunks(
        [MemorySource.MEMORY, MemorySource.SESSIONS]
    ) == 1


def test_list_chunks_filters_model_and_sources(store: IndexStore) -> None:
    store.replace_file(
        _fingerprint("a.md"),
        [_chunk("a", "a.md"), _chunk("old", "a.md", model="old", start=2)],
        mirror_vectors=False,
    )
    store.replace_file(
        _fingerprint("s.jsonl", source=MemorySource.SESSIONS),
        [_chunk("s", "s.jsonl", source=MemorySource.SESSIONS)],
        mirror_vectors=False,
    )

    memory_only = store.list_chunks(model="m", sources=[MemorySource.MEMORY])
    both = store.list_chunks(
        model="m",
        sources=[MemorySource.MEMORY, MemorySource.SESSIONS],
    )

    assert [chunk.id for chunk in memory_only] == ["a"]
    assert sorted(chunk.id for chunk in both) == ["a", "s"]
    assert memory_only[0].embedding == (1.0, 0.0, 0.0)
    assert store.list_chunks(model="m", sources=[]) == []


def test_reset_clears_rows(store: IndexStore) -> None:
    store.replace_file(
        _fingerprint("a.md"),
        [_chunk("a", "a.md")],
        mirror_vectors=False,
    )

    store.reset()

    assert store.count_files([MemorySource.MEMORY]) == 0
    assert store.count_chunks([MemorySource.MEMORY]) == 0


def test_vector_mirror_unavailable_when_disabled(store: IndexStore) -> None:
    assert store.ensure_vector_table(3) is False
    assert store.vector_search_ready(3) is False
    assert store.vector_dims is None


def test_closed_store_rejects_operations(store: IndexStore) -> None:
    store.close()
    store.close()

    assert store.closed
    with pytest.raises(MemoryIndexClosedError):
        store.read_meta()


def test_ensure_schema_upgrades_tables_without_source(tmp_path: Path) -> None:
    path = tmp_path / "legacy.sqlite"
    legacy = sqlite3.connect(path)
    with legacy:
        legacy.execute(
            "CREATE TABLE files (path TEXT PRIMARY KEY, hash TEXT NOT NULL,"
            " mtime REAL NOT NULL, size INTEGER NOT NULL)"
        )
        legacy.execute(
            "CREATE TABLE chunks (id TEXT PRIMARY KEY, path TEXT NOT NULL,"
            " start_line INTEGER NOT NULL, end_line INTEGER NOT NULL,"
            " hash TEXT NOT NULL, model TEXT NOT NULL, text TEXT NOT NULL,"
            " embedding TEXT NOT NULL, updated_at INTEGER NOT NULL)"
        )
        legacy.execute(
            "INSERT INTO files VALUES ('MEMORY.md', 'h', 1.0, 3)"
        )
    legacy.close()

    upgraded = IndexStore(path, vector=VectorExtension(enabled=False))
    try:
        upgraded.ensure_schema()
        assert upgraded.get_file_hash("MEMORY.md", MemorySource.MEMORY) == "h"
        assert upgraded.list_file_paths(MemorySource.MEMORY) == ["MEMORY.md"]
        columns = {
            row["name"]
            for row in upgraded.connection.execute("PRAGMA table_info(chunks)")
        }
        assert "source" in columns
    finally:
        upgraded.close()


@pytest.mark.usefixtures("require_sqlite_vec")
def test_vector_mirror_tracks_replacements(
    tmp_path: Path,
    make_store: Callable[..., IndexStore],
) -> None:
    store = make_store(tmp_path / "vec.sqlite", vector_enabled=True)
    try:
        assert store.ensure_vector_table(3) is True
        store.replace_file(
            _fingerprint("a.md"),
            [
                _chunk("a1", "a.md", embedding=(1.0, 0.0, 0.0)),
                _chunk("a2", "a.md", embedding=(), start=2),
            ],
            mirror_vectors=True,
        )
        store.replace_file(
            _fingerprint("b.md"),
            [_chunk("b1", "b.md", embedding=(0.0, 1.0, 0.0))],
            mirror_vectors=True,
        )

        (mirrored,) = store.connection.execute(
            f"SELECT COUNT(*) FROM {VECTOR_TABLE}"
        ).fetchone()
        assert mirrored == 2

        ranked = store.search_vectors(
            (1.0, 0.1, 0.0),
            model="m",
            sources=[MemorySource.MEMORY],
            limit=5,
        )
        assert [chunk.id for chunk, _ in ranked] == ["a1", "b1"]
        assert ranked[0][1] > ranked[1][1]

        store.delete_file("a.md", MemorySource.MEMORY)
        (mirrored,) = store.connection.execute(
            f"SELECT COUNT(*) FROM {VECTOR_TABLE}"
        ).fetchone()
        assert mirrored == 1

        # A dimension change rebuilds only the mirror.
        assert store.ensure_vector_table(4) is True
        assert store.vector_dims == 4
        assert store.count_chunks([MemorySource.MEMORY]) == 1
        assert store.vector_search_ready(3) is False
    finally:
        store.close()
