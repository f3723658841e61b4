"""Embedding provider contract, registry and fallback resolution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable
from types import MappingProxyType

from memdex.core.config import FallbackMode, MemorySearchSettings, ProviderName
from memdex.core.logging import Logger
from memdex.modules.memory.errors import (
    EmbeddingProviderError,
    ProviderNotRegisteredError,
    ProviderRegistryError,
    ProviderUnavailableError,
)
from memdex.modules.memory.models import EmbeddingVector

__all__ = [
    "EmbeddingProvider",
    "EmbeddingProviderResult",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderRegistry",
    "create_default_provider_registry",
    "create_embedding_provider",
    "register_builtin_providers",
]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Boundary contract for embedding backends.

    ``embed_batch`` returns one vector per input, in order. An empty tuple
    marks a per-item failure; raising fails the whole batch.
    """

    id: str
    model: str

    async def embed_query(self, text: str) -> EmbeddingVector:
        """Embed a single query string."""

    async def embed_batch(
        self,
        texts: Sequence[str],
    ) -> list[EmbeddingVector]:
        """Embed ``texts`` preserving order."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    settings: MemorySearchSettings


ProviderFactory = Callable[[ProviderInitContext], EmbeddingProvider]


@dataclass(frozen=True, slots=True)
class EmbeddingProviderResult:
    """The provider in use plus how it was chosen."""

    provider: EmbeddingProvider
    requested_provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


class ProviderRegistry:
    """Mutable registry mapping provider keys to factory callables."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under ``key``; duplicate keys are errors."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def get_factory(self, key: str) -> ProviderFactory:
        normalized = self._normalize_key(key)
        try:
            return self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r}",
            ) from exc

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        settings: MemorySearchSettings,
    ) -> EmbeddingProvider:
        """Instantiate the provider registered under ``key``."""

        factory = self.get_factory(key)
        return factory(ProviderInitContext(logger=logger, settings=settings))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        return MappingProxyType(dict(self._factories))


def _openai_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .openai import openai_provider_factory

    return openai_provider_factory(context)


def _gemini_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .gemini import gemini_provider_factory

    return gemini_provider_factory(context)


def _local_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .local import local_provider_factory

    return local_provider_factory(context)


_BUILTIN_FACTORIES: Mapping[str, ProviderFactory] = {
    ProviderName.OPENAI.value: _openai_factory,
    ProviderName.GEMINI.value: _gemini_factory,
    ProviderName.LOCAL.value: _local_factory,
}


def register_builtin_providers(
    registry: ProviderRegistry,
) -> ProviderRegistry:
    """Register the openai, gemini and local providers on ``registry``."""

    existing = registry.snapshot()
    for key, factory in _BUILTIN_FACTORIES.items():
        if key not in existing:
            registry.register(key, factory)
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    return register_builtin_providers(ProviderRegistry())


def create_embedding_provider(
    settings: MemorySearchSettings,
    *,
    registry: ProviderRegistry,
    logger: Logger,
) -> EmbeddingProviderResult:
    """Build the configured provider, falling back from local to OpenAI.

    Only the ``local`` provider falls back, and only when
    ``settings.fallback`` is ``openai``. Remote provider errors propagate.

    Raises:
        EmbeddingProviderError: If no usable provider could be created.
    """

    requested = settings.provider.value
    try:
        provider = registry.create(requested, logger=logger, settings=settings)
    except EmbeddingProviderError as exc:
        if (
            settings.provider is not ProviderName.LOCAL
            or settings.fallback is FallbackMode.NONE
        ):
            raise
        reason = _describe_failure(exc)
        logger.warning(
            "memory-provider-fallback",
            requested=requested,
            fallback=settings.fallback.value,
            reason=reason,
        )
        fallback_settings = settings.model_copy(
            update={"provider": ProviderName.OPENAI}
        )
        try:
            provider = registry.create(
                settings.fallback.value,
                logger=logger,
                settings=fallback_settings,
            )
        except EmbeddingProviderError as fallback_exc:
            raise ProviderUnavailableError(
                message=(
                    f"{reason}\n\nFallback to {settings.fallback.value} "
                    f"failed: {fallback_exc.message}"
                ),
                provider=requested,
                model=settings.model,
            ) from fallback_exc
        return EmbeddingProviderResult(
            provider=provider,
            requested_provider=requested,
            fallback_from=requested,
            fallback_reason=reason,
        )

    return EmbeddingProviderResult(
        provider=provider,
        requested_provider=requested,
    )


def _describe_failure(error: EmbeddingProviderError) -> str:
    hint = getattr(error, "hint", None)
    if hint:
        return f"{error.message}\n\n{hint}"
    return error.message
