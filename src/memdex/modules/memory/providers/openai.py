"""OpenAI embeddings provider implementation."""

from __future__ import annotations

import asyncio
import os
import random
import time
from typing import Any, Awaitable, Callable, Mapping, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from memdex.core.config import RemoteEmbeddingSettings
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
    "DEFAULT_OPENAI_MODEL",
    "OpenAIEmbeddingsProvider",
    "normalize_openai_model",
    "openai_provider_factory",
]

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
_DEFAULT_TIMEOUT = 60.0


def normalize_openai_model(model: str) -> str:
    """Strip the ``openai/`` prefix and default blank names.

    Example:
        >>> normalize_openai_model("openai/text-embedding-3-large")
        'text-embedding-3-large'
        >>> normalize_openai_model("  ")
        'text-embedding-3-small'
    """

    trimmed = model.strip()
    if not trimmed:
        return DEFAULT_OPENAI_MODEL
    if trimmed.startswith("openai/"):
        return trimmed[len("openai/") :]
    return trimmed


def _build_client(
    remote: RemoteEmbeddingSettings,
    *,
    model: str,
) -> AsyncOpenAI:
    api_key = remote.api_key or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ProviderConfigurationError(
            message=(
                "No API key found for provider openai. Set OPENAI_API_KEY "
                "or memory_search.remote.api_key."
            ),
            provider="openai",
            model=model,
        )
    base_url = remote.base_url or os.environ.get("OPENAI_BASE_URL")
    return AsyncOpenAI(
        api_key=api_key,
        base_url=base_url or None,
        default_headers=dict(remote.headers) or None,
        timeout=_DEFAULT_TIMEOUT,
        max_retries=0,
    )


class OpenAIEmbeddingsProvider:
    """Embed texts via the OpenAI embeddings API."""

    id = "openai"

    def __init__(
        self,
        *,
        logger: Logger,
        model: str,
        client: Any,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.logger = logger
        self.model = normalize_openai_model(model)
        self._client = client
        self._sleep = sleep
        self._now = now
        self._stats = {"requests": 0, "retries": 0, "failures": 0}

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------#
    # Provider interface
    # ------------------------------------------------------------------#
    async def embed_query(self, text: str) -> EmbeddingVector:
        vectors = await self._invoke_with_retries([text])
        return vectors[0] if vectors else ()

    async def embed_batch(
        self,
        texts: Sequence[str],
    ) -> list[EmbeddingVector]:
        if not texts:
            return []
        return await self._invoke_with_retries(list(texts))

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    async def _invoke_with_retries(
        self,
        batch: list[str],
    ) -> list[EmbeddingVector]:
        attempts = 0
        jitter_source = random.Random()

        while attempts < MAX_ATTEMPTS:
            attempts += 1
            start = self._now()
            try:
                response = await self._client.embeddings.create(
                    model=self.model,
                    input=batch,
                )
            except Exception as exc:
                status, request_id = self._extract_context(exc)
                if not (self._is_retryable(exc) and attempts < MAX_ATTEMPTS):
                    self._stats["failures"] += 1
                    raise self._translate_exception(
                        exc,
                        attempts=attempts,
                        status=status,
                        request_id=request_id,
                    ) from exc

                delay = compute_backoff(attempt=attempts, rng=jitter_source)
                self.logger.warning(
                    "openai-embed-retry",
                    provider=self.id,
                    model=self.model,
                    attempt=attempts,
                    max_attempts=MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._stats["retries"] += 1
                await self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                provider=self.id,
                model=self.model,
                batch_size=len(batch),
                latency=self._now() - start,
                attempts=attempts,
            )
            return self._order_vectors(response.data, len(batch))

        raise ProviderRetryExceededError(
            message="Failed to embed texts after multiple attempts.",
            provider=self.id,
            model=self.model,
            attempts=attempts,
        )

    @staticmethod
    def _order_vectors(
        data: Sequence[Any],
        size: int,
    ) -> list[EmbeddingVector]:
        """Place embeddings by their response index; gaps stay empty."""

        vectors: list[EmbeddingVector] = [() for _ in range(size)]
        for position, item in enumerate(data):
            index = getattr(item, "index", position)
            if not isinstance(index, int) or not 0 <= index < size:
                continue
            embedding = getattr(item, "embedding", None) or ()
            vectors[index] = tuple(float(value) for value in embedding)
        return vectors

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status, _ = OpenAIEmbeddingsProvider._extract_context(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None

        status_value = getattr(exc, "status_code", None)
        if isinstance(status_value, int):
            status = status_value

        value = getattr(exc, "request_id", None)
        if isinstance(value, str):
            request_id = value

        return status, request_id

    def _translate_exception(
        self,
        exc: Exception,
        *,
        attempts: int,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": self.id,
            "model": self.model,
            "status_code": status,
            "request_id": request_id,
        }
        if attempts >= MAX_ATTEMPTS and self._is_retryable(exc):
            return ProviderRetryExceededError(
                message=(
                    "Exceeded retry attempts when calling OpenAI embeddings "
                    f"API: {message}"
                ),
                attempts=attempts,
                **context,
            )
        if isinstance(exc, RateLimitError):
            return ProviderRateLimitError(message=message, **context)
        if self._is_retryable(exc):
            return ProviderRetryableError(message=message, **context)
        return ProviderRequestError(message=message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    model = normalize_openai_model(context.settings.model)
    client = _build_client(context.settings.remote, model=model)
    return OpenAIEmbeddingsProvider(
        logger=context.logger.bind(provider="openai"),
        model=model,
        client=client,
    )
