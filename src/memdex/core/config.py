"""Configuration models and loaders for :mod:`memdex`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from enum import StrEnum
import json
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from memdex.resources import get_resource

DEFAULTS_RESOURCE_NAME = "memdex.defaults.toml"
DEFAULT_AGENT_ID = "main"

_MODEL_CONFIG = {
    "str_strip_whitespace": True,
    "validate_assignment": True,
    "extra": "forbid",
    "protected_namespaces": (),
}


class MemorySource(StrEnum):
    """Corpora that can feed the memory index."""

    MEMORY = "memory"
    SESSIONS = "sessions"


class ProviderName(StrEnum):
    """Embedding backends understood by the provider registry."""

    OPENAI = "openai"
    GEMINI = "gemini"
    LOCAL = "local"


class FallbackMode(StrEnum):
    """Behavior when the local provider cannot be initialized."""

    OPENAI = "openai"
    NONE = "none"


class RemoteEmbeddingSettings(BaseModel):
    """Credentials and endpoint overrides for hosted providers."""

    base_url: str | None = Field(
        default=None,
        description="Override for the provider API base URL.",
    )
    api_key: str | None = Field(
        default=None,
        description="API key; falls back to provider environment variables.",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra HTTP headers sent with each embedding request.",
    )

    model_config = _MODEL_CONFIG


class LocalEmbeddingSettings(BaseModel):
    """Settings for the sentence-transformers backed local provider."""

    model_path: str | None = Field(
        default=None,
        description="Model name or path loaded by sentence-transformers.",
    )
    model_cache_dir: str | None = Field(
        default=None,
        description="Directory used to cache downloaded model weights.",
    )

    model_config = _MODEL_CONFIG


class VectorStoreSettings(BaseModel):
    """Native vector similarity (sqlite-vec) settings."""

    enabled: bool = True
    extension_path: str | None = Field(
        default=None,
        description=(
            "Explicit path to a sqlite-vec loadable extension; the bundled"
            " sqlite-vec wheel is used when unset."
        ),
    )

    model_config = _MODEL_CONFIG


class StoreSettings(BaseModel):
    """Location of the per-agent SQLite index."""

    path: str = Field(
        default="{state_dir}/memory/{agent_id}.sqlite",
        description=(
            "Index file path; supports {state_dir} and {agent_id} tokens."
        ),
    )
    vector: VectorStoreSettings = Field(default_factory=VectorStoreSettings)

    model_config = _MODEL_CONFIG


class ChunkingSettings(BaseModel):
    """Token budgets for the line-oriented chunker."""

    tokens: int = Field(default=400, ge=1)
    overlap: int = Field(default=80, ge=0)

    model_config = _MODEL_CONFIG

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingSettings":
        if self.overlap >= self.tokens:
            raise ValueError(
                "Chunking overlap must be smaller than the token budget."
            )
        return self


class SyncSettings(BaseModel):
    """Triggers that keep the index in step with the corpus."""

    on_session_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = Field(default=1500, ge=0)
    interval_minutes: float = Field(default=0, ge=0)
    embed_timeout_seconds: float | None = Field(
        default=120.0,
        gt=0,
        description="Per provider call timeout; null disables the guard.",
    )

    model_config = _MODEL_CONFIG


class QuerySettings(BaseModel):
    """Defaults applied to ``search`` when callers omit options."""

    max_results: int = Field(default=6, ge=1)
    min_score: float = Field(default=0.35, ge=0.0, le=1.0)

    model_config = _MODEL_CONFIG


class MemorySearchSettings(BaseModel):
    """Fully merged memory search settings for one agent."""

    enabled: bool = True
    sources: tuple[MemorySource, ...] = (MemorySource.MEMORY,)
    provider: ProviderName = ProviderName.OPENAI
    model: str = ""
    fallback: FallbackMode = FallbackMode.OPENAI
    remote: RemoteEmbeddingSettings = Field(
        default_factory=RemoteEmbeddingSettings
    )
    local: LocalEmbeddingSettings = Field(
        default_factory=LocalEmbeddingSettings
    )
    store: StoreSettings = Field(default_factory=StoreSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)

    model_config = _MODEL_CONFIG

    @field_validator("sources")
    @classmethod
    def _dedupe_sources(
        cls,
        value: tuple[MemorySource, ...],
    ) -> tuple[MemorySource, ...]:
        if not value:
            raise ValueError("At least one memory source must be enabled.")
        return tuple(dict.fromkeys(value))

    def has_source(self, source: MemorySource | str) -> bool:
        return MemorySource(source) in self.sources

    def cache_fingerprint(self) -> str:
        """Return a stable serialization used for registry keys."""

        return json.dumps(self.model_dump(mode="json"), sort_keys=True)


class AgentSettings(BaseModel):
    """One configured agent and its partial memory search overrides."""

    id: str
    default: bool = False
    workspace: str | None = None
    sessions_dir: str | None = None
    memory_search: dict[str, Any] = Field(default_factory=dict)

    model_config = _MODEL_CONFIG

    @field_validator("id")
    @classmethod
    def _require_id(cls, value: str) -> str:
        if not value:
            raise ValueError("Agent id cannot be blank.")
        return value


class AgentDefaults(BaseModel):
    """Settings shared by every agent unless overridden."""

    workspace: str = "{state_dir}/workspace"
    memory_search: MemorySearchSettings = Field(
        default_factory=MemorySearchSettings
    )

    model_config = _MODEL_CONFIG


class AgentsSettings(BaseModel):
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    agent_list: list[AgentSettings] = Field(
        default_factory=list,
        alias="list",
    )

    model_config = {**_MODEL_CONFIG, "populate_by_name": True}

    @model_validator(mode="after")
    def _unique_ids(self) -> "AgentsSettings":
        seen: set[str] = set()
        for agent in self.agent_list:
            if agent.id in seen:
                raise ValueError(f"Duplicate agent id: {agent.id!r}")
            seen.add(agent.id)
        return self

    def find(self, agent_id: str) -> AgentSettings | None:
        for agent in self.agent_list:
            if agent.id == agent_id:
                return agent
        return None


class AppConfig(BaseModel):
    """Root configuration for the :mod:`memdex` application."""

    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    state_dir: Path = Field(
        default=Path("~/.memdex"),
        description="Directory holding indexes, transcripts and logs.",
    )
    agents: AgentsSettings = Field(default_factory=AgentsSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        object.__setattr__(self, "state_dir", self.state_dir.expanduser())
        return self


def read_packaged_defaults_text() -> str:
    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["log_level"]
        'INFO'
    """

    return tomllib.loads(read_packaged_defaults_text())


def load_user_config(path: Path) -> dict[str, Any]:
    """Parse a user ``memdex.toml``; a missing file yields an empty layer.

    Raises:
        tomllib.TOMLDecodeError: If the file exists but is not valid TOML.
    """

    if not path.is_file():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def env_config_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``MEMDEX_*`` environment variables into a config layer."""

    layer: dict[str, Any] = {}
    level = environ.get("MEMDEX_LOG_LEVEL")
    if level:
        layer["log_level"] = level
    state_dir = environ.get("MEMDEX_STATE_DIR")
    if state_dir:
        layer["state_dir"] = state_dir
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed user ``memdex.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.

    Raises:
        pydantic.ValidationError: If the merged payload is invalid.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


def resolve_default_agent_id(config: AppConfig) -> str:
    """Return the agent flagged default, else the first listed, else main."""

    agents = config.agents.agent_list
    for agent in agents:
        if agent.default:
            return agent.id
    if agents:
        return agents[0].id
    return DEFAULT_AGENT_ID


def resolve_memory_search_settings(
    config: AppConfig,
    agent_id: str,
) -> MemorySearchSettings | None:
    """Merge agent overrides over the shared defaults.

    Returns:
        The merged settings, or ``None`` when memory search is disabled for
        the agent.
    """

    base = config.agents.defaults.memory_search
    agent = config.agents.find(agent_id)
    if agent is not None and agent.memory_search:
        merged = _deep_merge(
            base.model_dump(mode="python"),
            agent.memory_search,
        )
        settings = MemorySearchSettings.model_validate(merged)
    else:
        settings = base
    if not settings.enabled:
        return None
    return settings


def _prune_none(payload: Mapping[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, MappingABC):
            cleaned[key] = _prune_none(value)
        else:
            cleaned[key] = value
    return cleaned


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``memdex.toml`` template for users to customize.

    Args:
        config: Configuration instance to serialize.
        include_defaults: Whether to prepend the precedence commentary.

    Returns:
        A TOML-formatted string ready to persist for the user.
    """

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by memdex init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > memdex.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        document.add(tomlkit.comment("  MEMDEX_STATE_DIR=/path/to/state"))
        document.add(tomlkit.comment("  MEMDEX_LOG_LEVEL=info"))
        document.add(tomlkit.nl())

    document["log_level"] = config.log_level
    document["state_dir"] = str(config.state_dir)

    defaults = config.agents.defaults
    defaults_table = tomlkit.table()
    defaults_table["workspace"] = defaults.workspace
    defaults_table["memory_search"] = _prune_none(
        defaults.memory_search.model_dump(mode="json")
    )
    agents_table = tomlkit.table()
    agents_table["defaults"] = defaults_table

    if config.agents.agent_list:
        entries = tomlkit.aot()
        for agent in config.agents.agent_list:
            entries.append(
                tomlkit.item(_prune_none(agent.model_dump(mode="json")))
            )
        agents_table["list"] = entries

    document["agents"] = agents_table
    return tomlkit.dumps(document)


__all__ = [
    "AgentDefaults",
    "AgentSettings",
    "AgentsSettings",
    "AppConfig",
    "ChunkingSettings",
    "DEFAULT_AGENT_ID",
    "DEFAULTS_RESOURCE_NAME",
    "FallbackMode",
    "LocalEmbeddingSettings",
    "MemorySearchSettings",
    "MemorySource",
    "ProviderName",
    "QuerySettings",
    "RemoteEmbeddingSettings",
    "StoreSettings",
    "SyncSettings",
    "VectorStoreSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "read_packaged_defaults_text",
    "render_user_config",
    "resolve_default_agent_id",
    "resolve_memory_search_settings",
]
