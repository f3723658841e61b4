"""Local embeddings via sentence-transformers (``memdex[local]`` extra)."""

from __future__ import annotations

import asyncio
import importlib
from typing import Any, Sequence

from memdex.core.logging import Logger
from memdex.modules.memory.errors import ProviderUnavailableError
from memdex.modules.memory.models import EmbeddingVector

from . import ProviderInitContext

__all__ = [
    "DEFAULT_LOCAL_MODEL",
    "LocalEmbeddingsProvider",
    "local_provider_factory",
]

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
_SETUP_HINT = (
    "To enable local embeddings:\n"
    "1) Install the optional extra: pip install 'memdex[local]'\n"
    "2) Or set memory_search.provider = \"openai\" (remote)."
)


class LocalEmbeddingsProvider:
    """Encode texts with a SentenceTransformer model in a worker thread."""

    id = "local"

    def __init__(self, *, logger: Logger, model: str, encoder: Any) -> None:
        self.logger = logger
        self.model = model
        self._encoder = encoder

    def _encode(self, texts: list[str]) -> list[EmbeddingVector]:
        matrix = self._encoder.encode(
            texts,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [tuple(float(value) for value in row) for row in matrix]

    async def embed_query(self, text: str) -> EmbeddingVector:
        vectors = await asyncio.to_thread(self._encode, [text])
        return vectors[0] if vectors else ()

    async def embed_batch(
        self,
        texts: Sequence[str],
    ) -> list[EmbeddingVector]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, list(texts))


def local_provider_factory(
    context: ProviderInitContext,
) -> LocalEmbeddingsProvider:
    """Factory registered with the provider registry.

    Raises:
        ProviderUnavailableError: If sentence-transformers is missing or the
            model cannot be loaded.
    """

    local = context.settings.local
    model = (local.model_path or "").strip() or DEFAULT_LOCAL_MODEL
    try:
        module = importlib.import_module("sentence_transformers")
    except ImportError as exc:
        raise ProviderUnavailableError(
            message=(
                "Local embeddings unavailable: sentence-transformers is not "
                "installed."
            ),
            provider="local",
            model=model,
            hint=_SETUP_HINT,
        ) from exc
    try:
        encoder = module.SentenceTransformer(
            model,
            cache_folder=local.model_cache_dir or None,
        )
    except (OSError, ValueError, RuntimeError) as exc:
        raise ProviderUnavailableError(
            message=f"Local embeddings unavailable: {exc}",
            provider="local",
            model=model,
            hint=_SETUP_HINT,
        ) from exc
    return LocalEmbeddingsProvider(
        logger=context.logger.bind(provider="local"),
        model=model,
        encoder=encoder,
    )
