"""Typed error hierarchy for the memory index and its embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EmbeddingProviderError",
    "EmbeddingTimeoutError",
    "MemoryIndexClosedError",
    "MemoryIndexError",
    "MemoryPathError",
    "MemorySyncError",
    "ProviderConfigurationError",
    "ProviderNotRegisteredError",
    "ProviderRateLimitError",
    "ProviderRegistryError",
    "ProviderRequestError",
    "ProviderRetryExceededError",
    "ProviderRetryableError",
    "ProviderUnavailableError",
]


class MemoryIndexError(RuntimeError):
    """Base error for memory index operations."""


class MemorySyncError(MemoryIndexError):
    """Raised when a sync pass cannot complete."""


class EmbeddingTimeoutError(MemorySyncError):
    """Raised when a provider call exceeds the configured timeout."""

    def __init__(self, provider: str, timeout: float) -> None:
        super().__init__(
            f"Embedding provider {provider!r} did not respond within "
            f"{timeout:g}s"
        )
        self.provider = provider
        self.timeout = timeout


class MemoryPathError(MemoryIndexError, ValueError):
    """Raised when ``read_file`` receives a path outside the memory space."""


class MemoryIndexClosedError(MemoryIndexError):
    """Raised when a closed index instance is used."""


class ProviderRegistryError(RuntimeError):
    """Base error for provider registry failures."""


class ProviderNotRegisteredError(ProviderRegistryError, KeyError):
    """Raised when a provider key is missing from the registry."""

    def __str__(self) -> str:  # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class ProviderConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class ProviderUnavailableError(EmbeddingProviderError):
    """Raised when a provider backend cannot be initialized locally."""

    hint: str | None = None


@dataclass(slots=True)
class ProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class ProviderRetryableError(EmbeddingProviderError):
    """Raised for retryable transport or server-side errors."""


@dataclass(slots=True)
class ProviderRateLimitError(ProviderRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class ProviderRetryExceededError(EmbeddingProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0
