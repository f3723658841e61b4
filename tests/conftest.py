"""Shared pytest fixtures for memory index tests."""

from __future__ import annotations

import asyncio
import logging
import string
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Sequence

import pytest
from structlog import get_logger

from memdex.core.config import MemorySearchSettings
from memdex.core.paths import AgentPaths
from memdex.modules.memory.manager import MemoryIndexManager
from memdex.modules.memory.providers import EmbeddingProviderResult
from memdex.modules.memory.store import IndexStore
from memdex.modules.memory.vector import VectorExtension


class StubProvider:
    """Deterministic provider embedding texts as letter histograms.

    Every vector carries a constant trailing component so no text maps to a
    zero vector. Calls are recorded for assertions.
    """

    id = "stub"
    dims = len(string.ascii_lowercase) + 1

    def __init__(
        self,
        *,
        model: str = "stub-model",
        fail_texts: Sequence[str] = (),
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
    ) -> None:
        self.model = model
        self.fail_texts = set(fail_texts)
        self.gate = gate
        self.delay = delay
        self.batches: list[tuple[str, ...]] = []
        self.queries: list[str] = []
        self.closed = False

    @staticmethod
    def vector_for(text: str) -> tuple[float, ...]:
        lowered = text.lower()
        counts = [float(lowered.count(ch)) for ch in string.ascii_lowercase]
        return (*counts, 1.0)

    async def _pause(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

    async def embed_query(self, text: str) -> tuple[float, ...]:
        self.queries.append(text)
        await self._pause()
        if text in self.fail_texts:
            return ()
        return self.vector_for(text)

    async def embed_batch(
        self,
        texts: Sequence[str],
    ) -> list[tuple[float, ...]]:
        self.batches.append(tuple(texts))
        await self._pause()
        return [
            () if text in self.fail_texts else self.vector_for(text)
            for text in texts
        ]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def reset_root_logging() -> Iterator[None]:
    """Drop handlers installed by CLI invocations between tests."""

    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def stub_provider_cls() -> type[StubProvider]:
    return StubProvider


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def make_settings() -> Callable[..., MemorySearchSettings]:
    """Build settings with background triggers off unless requested."""

    def _make(**overrides: Any) -> MemorySearchSettings:
        payload: dict[str, Any] = {
            "sync": {
                "on_session_start": False,
                "on_search": True,
                "watch": False,
                "watch_debounce_ms": 10,
            },
            "store": {"vector": {"enabled": False}},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(payload.get(key), dict):
                payload[key] = {**payload[key], **value}
            else:
                payload[key] = value
        return MemorySearchSettings.model_validate(payload)

    return _make


@pytest.fixture
def agent_paths(tmp_path: Path) -> AgentPaths:
    workspace = tmp_path / "workspace"
    sessions = tmp_path / "sessions"
    workspace.mkdir()
    sessions.mkdir()
    return AgentPaths(
        agent_id="main",
        workspace_dir=workspace,
        sessions_dir=sessions,
        store_path=tmp_path / "index" / "main.sqlite",
    )


@pytest.fixture
def make_store() -> Callable[..., IndexStore]:
    def _make(path: Path, *, vector_enabled: bool = False) -> IndexStore:
        store = IndexStore(
            path,
            vector=VectorExtension(enabled=vector_enabled),
            logger=get_logger("test.memory.store"),
        )
        store.ensure_schema()
        return store

    return _make


@pytest.fixture
def make_manager(
    agent_paths: AgentPaths,
    make_store: Callable[..., IndexStore],
) -> Callable[..., MemoryIndexManager]:
    """Assemble a manager without watcher or transcript wiring."""

    def _make(
        settings: MemorySearchSettings,
        provider: Any,
    ) -> MemoryIndexManager:
        store = make_store(
            agent_paths.store_path,
            vector_enabled=settings.store.vector.enabled,
        )
        return MemoryIndexManager(
            agent_paths=agent_paths,
            settings=settings,
            store=store,
            provider=EmbeddingProviderResult(
                provider=provider,
                requested_provider=settings.provider.value,
            ),
            logger=get_logger("test.memory.manager"),
        )

    return _make


def sqlite_vec_loadable() -> bool:
    """Return whether sqlite-vec can be loaded into a fresh connection."""

    import sqlite3

    probe = VectorExtension(enabled=True)
    connection = sqlite3.connect(":memory:")
    try:
        return probe.load(connection)
    finally:
        connection.close()


@pytest.fixture
def require_sqlite_vec() -> None:
    if not sqlite_vec_loadable():
        pytest.skip("sqlite-vec extension cannot be loaded")
