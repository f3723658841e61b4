from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Iterable, Sequence

import httpx
import pytest
from openai import APIStatusError, RateLimitError
from structlog import get_logger

from memdex.core.config import MemorySearchSettings
from memdex.modules.memory.errors import (
    ProviderConfigurationError,
    ProviderRequestError,
    ProviderRetryExceededError,
)
from memdex.modules.memory.providers import ProviderInitContext
from memdex.modules.memory.providers.openai import (
    DEFAULT_OPENAI_MODEL,
    OpenAIEmbeddingsProvider,
    openai_provider_factory,
)

_Item = Sequence[tuple[int, Sequence[float]]] | Exception


class _FakeEmbeddingsAPI:
    """Stub embeddings API returning scripted ``(index, vector)`` rows."""

    def __init__(self, script: Iterable[_Item]) -> None:
        self._script = list(script)
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    async def create(
        self,
        *,
        model: str,
        input: Sequence[str],
    ) -> SimpleNamespace:
        self.calls.append((model, tuple(input)))
        if not self._script:
            raise AssertionError("unexpected OpenAI call")
        next_item = self._script.pop(0)
        if isinstance(next_item, Exception):
            raise next_item
        data = [
            SimpleNamespace(index=index, embedding=list(vector))
            for index, vector in next_item
        ]
        return SimpleNamespace(data=data)


class _FakeOpenAIClient:
    def __init__(self, script: Iterable[_Item]) -> None:
        self.embeddings = _FakeEmbeddingsAPI(script)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _provider(
    client: _FakeOpenAIClient,
    delays: list[float] | None = None,
) -> OpenAIEmbeddingsProvider:
    async def _sleep(delay: float) -> None:
        if delays is not None:
            delays.append(delay)

    return OpenAIEmbeddingsProvider(
        logger=get_logger("test.openai.provider"),
        model="openai/text-embedding-3-small",
        client=client,
        sleep=_sleep,
        now=lambda: 0.0,
    )


def _status_error(status: int, cls=APIStatusError) -> Exception:
    request = httpx.Request("POST", "https://example.com/embeddings")
    response = httpx.Response(status_code=status, request=request)
    return cls(message=f"status {status}", response=response, body=None)


def test_embed_batch_orders_vectors_by_response_index() -> None:
    client = _FakeOpenAIClient([[(1, [0.0, 1.0]), (0, [1.0, 0.0])]])
    provider = _provider(client)

    vectors = asyncio.run(provider.embed_batch(["alpha", "beta"]))

    assert vectors == [(1.0, 0.0), (0.0, 1.0)]
    assert client.embeddings.calls == [
        ("text-embedding-3-small", ("alpha", "beta")),
    ]
    assert provider.model == "text-embedding-3-small"
    assert provider.stats["requests"] == 1


def test_missing_rows_become_per_item_failures() -> None:
    client = _FakeOpenAIClient([[(0, [1.0]), (7, [2.0])]])
    provider = _provider(client)

    vectors = asyncio.run(provider.embed_batch(["a", "b"]))

    assert vectors == [(1.0,), ()]


def test_embed_query_and_empty_batch() -> None:
    client = _FakeOpenAIClient([[(0, [0.5, 0.5])]])
    provider = _provider(client)

    assert asyncio.run(provider.embed_query("q")) == (0.5, 0.5)
    assert asyncio.run(provider.embed_batch([])) == []
    assert len(client.embeddings.calls) == 1


def test_retryable_errors_back_off_then_succeed() -> None:
    client = _FakeOpenAIClient(
        [
            _status_error(503),
            _status_error(429, RateLimitError),
            [(0, [1.0])],
        ]
    )
    delays: list[float] = []
    provider = _provider(client, delays)

    vectors = asyncio.run(provider.embed_batch(["alpha"]))

    assert vectors == [(1.0,)]
    assert len(delays) == 2
    assert delays[0] == 0.5
    assert 0.8 <= delays[1] <= 1.2
    assert provider.stats["retries"] == 2


def test_retries_are_bounded() -> None:
    client = _FakeOpenAIClient(
        [_status_error(429, RateLimitError) for _ in range(5)]
    )
    provider = _provider(client, [])

    with pytest.raises(ProviderRetryExceededError) as exc_info:
        asyncio.run(provider.embed_batch(["alpha"]))

    assert exc_info.value.attempts == 5
    assert exc_info.value.status_code == 429
    assert provider.stats["retries"] == 4
    assert provider.stats["failures"] == 1


def test_client_errors_are_not_retried() -> None:
    client = _FakeOpenAIClient([_status_error(400)])
    provider = _provider(client, [])

    with pytest.raises(ProviderRequestError) as exc_info:
        asyncio.run(provider.embed_batch(["alpha"]))

    assert exc_info.value.status_code == 400
    assert len(client.embeddings.calls) == 1


def test_aclose_closes_the_client() -> None:
    client = _FakeOpenAIClient([])

    asyncio.run(_provider(client).aclose())

    assert client.closed


def test_factory_requires_an_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    context = ProviderInitContext(
        logger=get_logger("test.openai.factory"),
        settings=MemorySearchSettings(),
    )

    with pytest.raises(ProviderConfigurationError, match="OPENAI_API_KEY"):
        openai_provider_factory(context)


def test_factory_uses_configured_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings = MemorySearchSettings.model_validate(
        {"remote": {"api_key": "sk-test", "base_url": "http://localhost:9"}}
    )
    context = ProviderInitContext(
        logger=get_logger("test.openai.factory"),
        settings=settings,
    )

    provider = openai_provider_factory(context)

    assert provider.id == "openai"
    assert provider.model == DEFAULT_OPENAI_MODEL
    asyncio.run(provider.aclose())
