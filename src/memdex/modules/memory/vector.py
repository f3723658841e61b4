"""Vector helpers and the sqlite-vec capability probe."""

from __future__ import annotations

import json
import math
import sqlite3
from typing import Sequence

import numpy as np
import sqlite_vec

from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.models import EmbeddingVector

__all__ = [
    "VectorExtension",
    "cosine_similarity",
    "decode_embedding",
    "encode_embedding",
    "vector_to_blob",
]


def vector_to_blob(vector: Sequence[float]) -> bytes:
    """Pack ``vector`` as little-endian float32 bytes for sqlite-vec.

    Example:
        >>> len(vector_to_blob([0.0, 1.0, 2.0]))
        12
    """

    return np.asarray(vector, dtype="<f4").tobytes()


def encode_embedding(vector: Sequence[float]) -> str:
    return json.dumps([float(value) for value in vector])


def decode_embedding(raw: str | None) -> EmbeddingVector:
    """Parse a stored JSON embedding; unreadable payloads decode as empty."""

    if not raw:
        return ()
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(values, list):
        return ()
    return tuple(float(value) for value in values)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity over the shared prefix of ``a`` and ``b``.

    Empty or zero-norm vectors score ``0.0``.

    Example:
        >>> round(cosine_similarity([1.0, 0.0], [1.0, 0.0]), 6)
        1.0
        >>> cosine_similarity([], [1.0])
        0.0
    """

    if not a or not b:
        return 0.0
    size = min(len(a), len(b))
    left = np.asarray(a[:size], dtype=np.float64)
    right = np.asarray(b[:size], dtype=np.float64)
    norm = float(np.linalg.norm(left)) * float(np.linalg.norm(right))
    if norm == 0.0 or not math.isfinite(norm):
        return 0.0
    return float(np.dot(left, right) / norm)


class VectorExtension:
    """Tri-state probe for native vector similarity on a connection.

    ``available`` is ``None`` until :meth:`load` runs, then ``True`` or
    ``False`` for the lifetime of the instance. A failed load records
    ``load_error`` and the index falls back to brute-force scoring.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        extension_path: str | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.enabled = enabled
        self.extension_path = extension_path or None
        self.available: bool | None = None if enabled else False
        self.load_error: str | None = None
        self._logger = logger or get_logger(__name__, component="vector")

    def load(self, connection: sqlite3.Connection) -> bool:
        """Load sqlite-vec into ``connection`` once; return availability."""

        if self.available is not None:
            return self.available
        try:
            connection.enable_load_extension(True)
            try:
                if self.extension_path:
                    connection.load_extension(self.extension_path)
                else:
                    sqlite_vec.load(connection)
            finally:
                connection.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as exc:
            self.available = False
            self.load_error = str(exc)
            self._logger.warning(
                "memory-vector-unavailable",
                extension_path=self.extension_path,
                error=self.load_error,
            )
            return False
        self.available = True
        self._logger.debug(
            "memory-vector-loaded",
            extension_path=self.extension_path,
        )
        return True
