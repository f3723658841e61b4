"""SQLite persistence for the memory index."""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Iterable, Sequence

from memdex.core.config import MemorySource
from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.errors import MemoryIndexClosedError
from memdex.modules.memory.models import (
    ChunkRecord,
    EmbeddingVector,
    FileFingerprint,
    IndexMeta,
)
from memdex.modules.memory.vector import (
    VectorExtension,
    decode_embedding,
    encode_embedding,
    vector_to_blob,
)

__all__ = ["META_KEY", "VECTOR_TABLE", "IndexStore", "now_ms"]

META_KEY = "memory_index_meta_v1"
VECTOR_TABLE = "chunks_vec"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        path TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'memory',
        hash TEXT NOT NULL,
        mtime REAL NOT NULL,
        size INTEGER NOT NULL,
        PRIMARY KEY (path, source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id TEXT PRIMARY KEY,
        path TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'memory',
        start_line INTEGER NOT NULL,
        end_line INTEGER NOT NULL,
        hash TEXT NOT NULL,
        model TEXT NOT NULL,
        text TEXT NOT NULL,
        embedding TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_files_path_source "
    "ON files(path, source)",
)

_CHUNK_COLUMNS = (
    "id, path, source, start_line, end_line, hash, model, text, embedding,"
    " updated_at"
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _row_to_chunk(row: sqlite3.Row) -> ChunkRecord:
    return ChunkRecord(
        id=row["id"],
        path=row["path"],
        source=MemorySource(row["source"]),
        start_line=int(row["start_line"]),
        end_line=int(row["end_line"]),
        hash=row["hash"],
        model=row["model"],
        text=row["text"],
        embedding=decode_embedding(row["embedding"]),
        updated_at=int(row["updated_at"]),
    )


class IndexStore:
    """Owns the SQLite connection, schema and vector mirror table.

    The ``chunks`` table is authoritative; ``chunks_vec`` (sqlite-vec) only
    mirrors embeddings for native similarity and may be dropped at any time.
    """

    def __init__(
        self,
        path: Path,
        *,
        vector: VectorExtension,
        logger: Logger | None = None,
    ) -> None:
        self.path = path
        self.vector = vector
        self._logger = logger or get_logger(__name__, component="memory-store")
        path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: sqlite3.Connection | None = sqlite3.connect(path)
        self._connection.row_factory = sqlite3.Row
        self._vector_dims: int | None = None
        self._persisted_dims: int | None = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise MemoryIndexClosedError(f"Index store closed: {self.path}")
        return self._connection

    @property
    def closed(self) -> bool:
        return self._connection is None

    def close(self) -> None:
        if self._connection is None:
            return
        self._connection.close()
        self._connection = None

    def ensure_schema(self) -> None:
        """Create tables and indexes, upgrading older layouts in place."""

        conn = self.connection
        with conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            for table in ("files", "chunks"):
                self._ensure_column(
                    table, "source", "TEXT NOT NULL DEFAULT 'memory'"
                )
            for statement in _INDEXES:
                conn.execute(statement)
        meta = self.read_meta()
        if meta is not None:
            self._persisted_dims = meta.vector_dims

    def _ensure_column(self, table: str, column: str, ddl: str) -> None:
        rows = self.connection.execute(f"PRAGMA table_info({table})")
        if any(row["name"] == column for row in rows):
            return
        self.connection.execute(
            f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"
        )
        self._logger.info("memory-schema-upgraded", table=table, column=column)

    # ------------------------------------------------------------------ #
    # Meta
    # ------------------------------------------------------------------ #

    def read_meta(self) -> IndexMeta | None:
        row = self.connection.execute(
            "SELECT value FROM meta WHERE key = ?",
            (META_KEY,),
        ).fetchone()
        if row is None:
            return None
        try:
            return IndexMeta.from_payload(json.loads(row["value"]))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            self._logger.warning(
                "memory-meta-unreadable", store=str(self.path)
            )
            return None

    def write_meta(self, meta: IndexMeta) -> None:
        with self.connection as conn:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (META_KEY, json.dumps(meta.to_payload(), sort_keys=True)),
            )
        self._persisted_dims = meta.vector_dims

    # ------------------------------------------------------------------ #
    # Files and chunks
    # ------------------------------------------------------------------ #

    def get_file_hash(self, path: str, source: MemorySource) -> str | None:
        row = self.connection.execute(
            "SELECT hash FROM files WHERE path = ? AND source = ?",
            (path, source.value),
        ).fetchone()
        return None if row is None else str(row["hash"])

    def list_file_paths(self, source: MemorySource) -> list[str]:
        rows = self.connection.execute(
            "SELECT path FROM files WHERE source = ? ORDER BY path",
            (source.value,),
        )
        return [str(row["path"]) for row in rows]

    def get_fingerprint(
        self,
        path: str,
        source: MemorySource,
    ) -> FileFingerprint | None:
        row = self.connection.execute(
            "SELECT path, source, hash, mtime, size FROM files "
            "WHERE path = ? AND source = ?",
            (path, source.value),
        ).fetchone()
        if row is None:
            return None
        return FileFingerprint(
            path=row["path"],
            source=MemorySource(row["source"]),
            hash=row["hash"],
            mtime=float(row["mtime"]),
            size=int(row["size"]),
        )

    def replace_file(
        self,
        fingerprint: FileFingerprint,
        chunks: Sequence[ChunkRecord],
        *,
        mirror_vectors: bool,
    ) -> None:
        """Swap a file's chunk set and fingerprint in one transaction."""

        conn = self.connection
        with conn:
            self._delete_chunks(fingerprint.path, fingerprint.source)
            conn.executemany(
                f"INSERT INTO chunks ({_CHUNK_COLUMNS}) "
                f"VALUES ({_placeholders(10)})",
                [
                    (
                        chunk.id,
                        chunk.path,
                        chunk.source.value,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model,
                        chunk.text,
                        encode_embedding(chunk.embedding),
                        chunk.updated_at,
                    )
                    for chunk in chunks
                ],
            )
            if mirror_vectors and self._vector_dims is not None:
                conn.executemany(
                    f"INSERT INTO {VECTOR_TABLE} (id, embedding) "
                    "VALUES (?, ?)",
                    [
                        (chunk.id, vector_to_blob(chunk.embedding))
                        for chunk in chunks
                        if len(chunk.embedding) == self._vector_dims
                    ],
                )
            conn.execute(
                "INSERT INTO files (path, source, hash, mtime, size) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(path, source) DO UPDATE SET "
                "hash = excluded.hash, mtime = excluded.mtime, "
                "size = excluded.size",
                (
                    fingerprint.path,
                    fingerprint.source.value,
                    fingerprint.hash,
                    fingerprint.mtime,
                    fingerprint.size,
                ),
            )

    def delete_file(self, path: str, source: MemorySource) -> None:
        """Remove a fingerprint with its chunks and mirrored vectors."""

        conn = self.connection
        with conn:
            self._delete_chunks(path, source)
            conn.execute(
                "DELETE FROM files WHERE path = ? AND source = ?",
                (path, source.value),
            )

    def _delete_chunks(self, path: str, source: MemorySource) -> None:
        conn = self.connection
        if self._vector_table_exists():
            ids = [
                (row["id"],)
                for row in conn.execute(
                    "SELECT id FROM chunks WHERE path = ? AND source = ?",
                    (path, source.value),
                )
            ]
            conn.executemany(
                f"DELETE FROM {VECTOR_TABLE} WHERE id = ?",
                ids,
            )
        conn.execute(
            "DELETE FROM chunks WHERE path = ? AND source = ?",
            (path, source.value),
        )

    def list_chunks(
        self,
        *,
        model: str,
        sources: Iterable[MemorySource],
    ) -> list[ChunkRecord]:
        source_values = [source.value for source in sources]
        if not source_values:
            return []
        rows = self.connection.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks "
            "WHERE model = ? "
            f"AND source IN ({_placeholders(len(source_values))})",
            (model, *source_values),
        )
        return [_row_to_chunk(row) for row in rows]

    def count_files(self, sources: Iterable[MemorySource]) -> int:
        return self._count("files", sources)

    def count_chunks(self, sources: Iterable[MemorySource]) -> int:
        return self._count("chunks", sources)

    def _count(self, table: str, sources: Iterable[MemorySource]) -> int:
        source_values = [source.value for source in sources]
        if not source_values:
            return 0
        row = self.connection.execute(
            f"SELECT COUNT(*) AS total FROM {table} "
            f"WHERE source IN ({_placeholders(len(source_values))})",
            source_values,
        ).fetchone()
        return int(row["total"])

    def reset(self) -> None:
        """Delete every file and chunk row and drop the vector mirror."""

        conn = self.connection
        with conn:
            conn.execute("DELETE FROM files")
            conn.execute("DELETE FROM chunks")
        self.drop_vector_table()
        self._persisted_dims = None

    # ------------------------------------------------------------------ #
    # Vector mirror
    # ------------------------------------------------------------------ #

    @property
    def vector_dims(self) -> int | None:
        """Dimensionality of the mirror table, as created or persisted."""

        return self._vector_dims or self._persisted_dims

    def _vector_table_exists(self) -> bool:
        if not self.vector.load(self.connection):
            return False
        row = self.connection.execute(
            "SELECT name FROM sqlite_master WHERE name = ?",
            (VECTOR_TABLE,),
        ).fetchone()
        return row is not None

    def ensure_vector_table(self, dims: int) -> bool:
        """Create (or recreate on a dimension change) the mirror table.

        An existing table is reused only when it was persisted with the same
        dimensionality; otherwise it is dropped and rebuilt empty.

        Returns:
            Whether the mirror is ready to receive ``dims``-sized vectors.
        """

        if not self.vector.load(self.connection):
            return False
        if self._vector_dims == dims:
            return True
        reusable = self._vector_dims is None and self._persisted_dims == dims
        if not reusable:
            self.drop_vector_table()
        with self.connection as conn:
            conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE} USING "
                f"vec0(id TEXT PRIMARY KEY, embedding FLOAT[{dims}])"
            )
        self._vector_dims = dims
        self._logger.debug("memory-vector-table-ready", dims=dims)
        return True

    def drop_vector_table(self) -> None:
        self._vector_dims = None
        if not self.vector.load(self.connection):
            return
        with self.connection as conn:
            conn.execute(f"DROP TABLE IF EXISTS {VECTOR_TABLE}")

    def vector_search_ready(self, dims: int) -> bool:
        """Return whether a native query with ``dims``-sized input can run.

        The mirror is never recreated from a query; a dimension mismatch
        leaves the caller on the brute-force path.
        """

        if not self.vector.load(self.connection):
            return False
        if self._vector_dims == dims:
            return True
        if self._vector_dims is None and self._persisted_dims == dims:
            return self.ensure_vector_table(dims)
        return False

    def search_vectors(
        self,
        query: EmbeddingVector,
        *,
        model: str,
        sources: Iterable[MemorySource],
        limit: int,
    ) -> list[tuple[ChunkRecord, float]]:
        """Rank mirrored chunks by cosine distance inside SQLite."""

        source_values = [source.value for source in sources]
        if not source_values or limit <= 0:
            return []
        rows = self.connection.execute(
            f"SELECT c.id, c.path, c.source, c.start_line, c.end_line, "
            f"c.hash, c.model, c.text, '[]' AS embedding, c.updated_at, "
            f"vec_distance_cosine(v.embedding, ?) AS dist "
            f"FROM {VECTOR_TABLE} v JOIN chunks c ON c.id = v.id "
            f"WHERE c.model = ? "
            f"AND c.source IN ({_placeholders(len(source_values))}) "
            f"ORDER BY dist ASC LIMIT ?",
            (vector_to_blob(query), model, *source_values, limit),
        )
        return [
            (_row_to_chunk(row), 1.0 - float(row["dist"])) for row in rows
        ]
