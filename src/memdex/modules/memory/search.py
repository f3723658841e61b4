"""Query path: embed, rank natively or by brute force, shape results."""

from __future__ import annotations

import math

from memdex.core.config import MemorySearchSettings
from memdex.core.logging import Logger, get_logger
from memdex.modules.memory.models import (
    ChunkRecord,
    EmbeddingVector,
    MemorySearchResult,
)
from memdex.modules.memory.providers import EmbeddingProvider
from memdex.modules.memory.store import IndexStore
from memdex.modules.memory.sync import call_with_timeout
from memdex.modules.memory.vector import cosine_similarity

__all__ = ["SNIPPET_MAX_CHARS", "QueryEngine"]

SNIPPET_MAX_CHARS = 700


def _snippet(text: str) -> str:
    return text[:SNIPPET_MAX_CHARS]


def _to_result(chunk: ChunkRecord, score: float) -> MemorySearchResult:
    return MemorySearchResult(
        path=chunk.path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        score=score,
        snippet=_snippet(chunk.text),
        source=chunk.source,
    )


class QueryEngine:
    """Ranks indexed chunks against a query embedding.

    The native sqlite-vec path is used when the mirror table matches the
    query dimensionality; otherwise every chunk for the active model and
    sources is scored in process. Both paths score with ``1 - cosine
    distance`` so results agree up to float32 rounding.
    """

    def __init__(
        self,
        *,
        store: IndexStore,
        provider: EmbeddingProvider,
        settings: MemorySearchSettings,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings
        self._logger = logger or get_logger(
            __name__, component="memory-search"
        )

    async def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        min_score: float | None = None,
    ) -> list[MemorySearchResult]:
        cleaned = query.strip()
        limit = (
            self._settings.query.max_results
            if max_results is None
            else max_results
        )
        if not cleaned or limit <= 0:
            return []
        threshold = (
            self._settings.query.min_score if min_score is None else min_score
        )

        query_vector = await call_with_timeout(
            self._provider.embed_query(cleaned),
            timeout=self._settings.sync.embed_timeout_seconds,
            provider_id=self._provider.id,
        )
        if not query_vector:
            return []

        if self._store.vector_search_ready(len(query_vector)):
            ranked = self._search_native(query_vector, limit=limit)
            path = "native"
        else:
            ranked = self._search_brute_force(query_vector, limit=limit)
            path = "brute-force"

        results = [
            _to_result(chunk, score)
            for chunk, score in ranked
            if math.isfinite(score) and score >= threshold
        ]
        self._logger.debug(
            "memory-search",
            path=path,
            results=len(results),
            max_results=limit,
            min_score=threshold,
        )
        return results[:limit]

    def _search_native(
        self,
        query_vector: EmbeddingVector,
        *,
        limit: int,
    ) -> list[tuple[ChunkRecord, float]]:
        return self._store.search_vectors(
            query_vector,
            model=self._provider.model,
            sources=self._settings.sources,
            limit=limit,
        )

    def _search_brute_force(
        self,
        query_vector: EmbeddingVector,
        *,
        limit: int,
    ) -> list[tuple[ChunkRecord, float]]:
        chunks = self._store.list_chunks(
            model=self._provider.model,
            sources=self._settings.sources,
        )
        scored = [
            (chunk, cosine_similarity(query_vector, chunk.embedding))
            for chunk in chunks
        ]
        scored = [item for item in scored if math.isfinite(item[1])]
        scored.sort(
            key=lambda item: (-item[1], item[0].path, item[0].start_line)
        )
        return scored
