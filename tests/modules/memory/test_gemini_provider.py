from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from structlog import get_logger

from memdex.core.config import MemorySearchSettings
from memdex.modules.memory.errors import (
    ProviderConfigurationError,
    ProviderRequestError,
    ProviderRetryExceededError,
)
from memdex.modules.memory.providers import ProviderInitContext
from memdex.modules.memory.providers.gemini import (
    GeminiEmbeddingsProvider,
    gemini_provider_factory,
)


def _provider(handler, delays: list[float] | None = None):
    async def _sleep(delay: float) -> None:
        if delays is not None:
            delays.append(delay)

    client = httpx.AsyncClient(
        base_url="https://gemini.test/v1beta/",
        transport=httpx.MockTransport(handler),
    )
    return GeminiEmbeddingsProvider(
        logger=get_logger("test.gemini.provider"),
        model="models/text-embedding-004",
        client=client,
        sleep=_sleep,
    )


def _run(provider: GeminiEmbeddingsProvider, coro):
    async def _runner():
        try:
            return await coro
        finally:
            await provider.aclose()

    return asyncio.run(_runner())


def test_embed_query_posts_retrieval_query() -> None:
    seen: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"embedding": {"values": [0.1, 0.2]}})

    provider = _provider(handler)

    vector = _run(provider, provider.embed_query("where is it"))

    assert vector == (0.1, 0.2)
    path, body = seen[0]
    assert path == "/v1beta/models/text-embedding-004:embedContent"
    assert body["taskType"] == "RETRIEVAL_QUERY"
    assert body["content"]["parts"][0]["text"] == "where is it"


def test_embed_batch_pads_missing_embeddings() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path.endswith(":batchEmbedContents")
        assert len(body["requests"]) == 3
        assert {item["taskType"] for item in body["requests"]} == {
            "RETRIEVAL_DOCUMENT"
        }
        return httpx.Response(
            200,
            json={"embeddings": [{"values": [1.0]}, {"oops": True}]},
        )

    provider = _provider(handler)

    vectors = _run(provider, provider.embed_batch(["a", "b", "c"]))

    assert vectors == [(1.0,), (), ()]


def test_server_errors_are_retried() -> None:
    responses = iter(
        [
            httpx.Response(503, text="busy"),
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"embedding": {"values": [3.0]}}),
        ]
    )
    delays: list[float] = []
    provider = _provider(lambda request: next(responses), delays)

    vector = _run(provider, provider.embed_query("retry"))

    assert vector == (3.0,)
    assert len(delays) == 2


def test_retries_stop_after_max_attempts() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(500, text="down")

    provider = _provider(handler, [])

    with pytest.raises(ProviderRetryExceededError) as exc_info:
        _run(provider, provider.embed_query("retry"))

    assert len(calls) == 5
    assert exc_info.value.status_code == 500


def test_client_errors_fail_fast() -> None:
    provider = _provider(lambda request: httpx.Response(400, text="bad"))

    with pytest.raises(ProviderRequestError, match="400 bad"):
        _run(provider, provider.embed_query("nope"))


def test_factory_requires_a_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    context = ProviderInitContext(
        logger=get_logger("test.gemini.factory"),
        settings=MemorySearchSettings(provider="gemini"),
    )

    with pytest.raises(ProviderConfigurationError, match="GEMINI_API_KEY"):
        gemini_provider_factory(context)


def test_factory_reads_key_from_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "g-test")
    context = ProviderInitContext(
        logger=get_logger("test.gemini.factory"),
        settings=MemorySearchSettings(provider="gemini", model="gemini/x"),
    )

    provider = gemini_provider_factory(context)

    assert provider.id == "gemini"
    assert provider.model == "x"
    asyncio.run(provider.aclose())
