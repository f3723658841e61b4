"""Gemini embeddings provider backed by the REST API via httpx."""

from __future__ import annotations

import asyncio
import os
import random
from typing import Any, Awaitable, Callable, Sequence

import httpx

from memdex.core.logging import Logger
from memdex.modules.memory.errors import (
    EmbeddingProviderError,
    ProviderConfigurationError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderRetryableError,
    ProviderRetryExceededError,
)
from memdex.modules.memory.models import EmbeddingVector

from . import ProviderInitContext
from .backoff import MAX_ATTEMPTS, compute_backoff

__all__ = [
    "DEFAULT_GEMINI_BASE_URL",
    "DEFAULT_GEMINI_MODEL",
    "GeminiEmbeddingsProvider",
    "gemini_provider_factory",
    "normalize_gemini_model",
]

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
_MODEL_PREFIXES = ("models/", "gemini/", "google/")
_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


def normalize_gemini_model(model: str) -> str:
    """Strip provider prefixes and default blank names.

    Example:
        >>> normalize_gemini_model("models/text-embedding-004")
        'text-embedding-004'
        >>> normalize_gemini_model("")
        'gemini-embedding-001'
    """

    trimmed = model.strip()
    if not trimmed:
        return DEFAULT_GEMINI_MODEL
    for prefix in _MODEL_PREFIXES:
        if trimmed.startswith(prefix):
            return trimmed[len(prefix) :]
    return trimmed


def _parse_values(payload: Any) -> EmbeddingVector:
    if not isinstance(payload, dict):
        return ()
    values = payload.get("values")
    if not isinstance(values, list):
        return ()
    return tuple(float(value) for value in values)


class GeminiEmbeddingsProvider:
    """Embed texts with ``embedContent``/``batchEmbedContents``."""

    id = "gemini"

    def __init__(
        self,
        *,
        logger: Logger,
        model: str,
        client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.logger = logger
        self.model = normalize_gemini_model(model)
        self._client = client
        self._sleep = sleep

    @property
    def _model_path(self) -> str:
        return f"models/{self.model}"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed_query(self, text: str) -> EmbeddingVector:
        payload = await self._post(
            f"{self._model_path}:embedContent",
            {
                "content": {"parts": [{"text": text}]},
                "taskType": "RETRIEVAL_QUERY",
            },
        )
        return _parse_values(payload.get("embedding"))

    async def embed_batch(
        self,
        texts: Sequence[str],
    ) -> list[EmbeddingVector]:
        if not texts:
            return []
        payload = await self._post(
            f"{self._model_path}:batchEmbedContents",
            {
                "requests": [
                    {
                        "model": self._model_path,
                        "content": {"parts": [{"text": text}]},
                        "taskType": "RETRIEVAL_DOCUMENT",
                    }
                    for text in texts
                ]
            },
        )
        embeddings = payload.get("embeddings")
        if not isinstance(embeddings, list):
            embeddings = []
        vectors = [_parse_values(item) for item in embeddings[: len(texts)]]
        vectors.extend(() for _ in range(len(texts) - len(vectors)))
        return vectors

    async def _post(
        self,
        endpoint: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        attempts = 0
        rng = random.Random()
        while True:
            attempts += 1
            try:
                response = await self._client.post(endpoint, json=body)
                response.raise_for_status()
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                status = (
                    exc.response.status_code
                    if isinstance(exc, httpx.HTTPStatusError)
                    else None
                )
                retryable = status is None or status == 429 or status >= 500
                if not retryable or attempts >= MAX_ATTEMPTS:
                    raise self._translate(exc, status, attempts) from exc
                delay = compute_backoff(attempt=attempts, rng=rng)
                self.logger.warning(
                    "gemini-embed-retry",
                    provider=self.id,
                    model=self.model,
                    attempt=attempts,
                    retry_delay=delay,
                    status_code=status,
                )
                await self._sleep(delay)
                continue
            data = response.json()
            return data if isinstance(data, dict) else {}

    def _translate(
        self,
        exc: httpx.HTTPError,
        status: int | None,
        attempts: int,
    ) -> EmbeddingProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            message = (
                f"gemini embeddings failed: {status} {exc.response.text}"
            )
        else:
            message = f"gemini embeddings failed: {exc}"
        context = {
            "message": message,
            "provider": self.id,
            "model": self.model,
            "status_code": status,
        }
        retryable = status is None or status == 429 or status >= 500
        if retryable and attempts >= MAX_ATTEMPTS:
            return ProviderRetryExceededError(attempts=attempts, **context)
        if status == 429:
            return ProviderRateLimitError(**context)
        if retryable:
            return ProviderRetryableError(**context)
        return ProviderRequestError(**context)


def _resolve_api_key(context: ProviderInitContext, model: str) -> str:
    api_key = (
        context.settings.remote.api_key
        or os.environ.get("GEMINI_API_KEY")
        or os.environ.get("GOOGLE_API_KEY")
    )
    if not api_key:
        raise ProviderConfigurationError(
            message=(
                "No API key found for provider gemini. Set GEMINI_API_KEY, "
                "GOOGLE_API_KEY or memory_search.remote.api_key."
            ),
            provider="gemini",
            model=model,
        )
    return api_key


def gemini_provider_factory(
    context: ProviderInitContext,
) -> GeminiEmbeddingsProvider:
    """Factory registered with the provider registry."""

    remote = context.settings.remote
    model = normalize_gemini_model(context.settings.model)
    headers = {
        "Content-Type": "application/json",
        "x-goog-api-key": _resolve_api_key(context, model),
        **remote.headers,
    }
    base_url = (remote.base_url or DEFAULT_GEMINI_BASE_URL).rstrip("/") + "/"
    client = httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=_TIMEOUT,
    )
    return GeminiEmbeddingsProvider(
        logger=context.logger.bind(provider="gemini"),
        model=model,
        client=client,
    )
