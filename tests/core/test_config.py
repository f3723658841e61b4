"""Tests for :mod:`memdex.core.config`."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from memdex.core.config import (
    AppConfig,
    MemorySearchSettings,
    MemorySource,
    ProviderName,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    load_user_config,
    render_user_config,
    resolve_default_agent_id,
    resolve_memory_search_settings,
)


def _config(**user: object) -> AppConfig:
    return load_config(defaults=load_packaged_defaults(), user_config=user)


def test_packaged_defaults_match_model_defaults() -> None:
    config = _config()
    settings = config.agents.defaults.memory_search

    assert config.log_level == "INFO"
    assert config.state_dir == Path("~/.memdex").expanduser()
    assert settings == MemorySearchSettings()
    assert settings.sources == (MemorySource.MEMORY,)
    assert settings.provider is ProviderName.OPENAI
    assert settings.chunking.tokens == 400
    assert settings.chunking.overlap == 80
    assert settings.query.max_results == 6
    assert settings.query.min_score == pytest.approx(0.35)
    assert settings.sync.watch_debounce_ms == 1500


def test_layers_apply_in_precedence_order() -> None:
    config = load_config(
        defaults=load_packaged_defaults(),
        user_config={
            "log_level": "warning",
            "agents": {
                "defaults": {"memory_search": {"query": {"max_results": 3}}}
            },
        },
        env_config={"log_level": "error"},
        cli_overrides={"log_level": "debug"},
    )

    memory_search = config.agents.defaults.memory_search
    assert config.log_level == "DEBUG"
    assert memory_search.query.max_results == 3
    assert memory_search.query.min_score == pytest.approx(0.35)


def test_env_config_reads_memdex_variables() -> None:
    layer = env_config_from_environ(
        {
            "MEMDEX_LOG_LEVEL": "debug",
            "MEMDEX_STATE_DIR": "/srv/memdex",
            "OTHER": "ignored",
        }
    )

    assert layer == {"log_level": "debug", "state_dir": "/srv/memdex"}
    assert env_config_from_environ({}) == {}


@pytest.mark.parametrize(
    "payload",
    [
        {"chunking": {"tokens": 100, "overlap": 100}},
        {"sources": []},
        {"sources": ["email"]},
        {"query": {"min_score": 1.5}},
        {"provider": "cohere"},
        {"unknown": True},
    ],
)
def test_memory_search_settings_reject_invalid_values(payload) -> None:
    with pytest.raises(ValidationError):
        MemorySearchSettings.model_validate(payload)


def test_sources_are_deduplicated() -> None:
    settings = MemorySearchSettings.model_validate(
        {"sources": ["sessions", "memory", "sessions"]}
    )

    assert settings.sources == (MemorySource.SESSIONS, MemorySource.MEMORY)
    assert settings.has_source("memory")


def test_duplicate_agent_ids_are_rejected() -> None:
    with pytest.raises(ValidationError, match="Duplicate agent id"):
        _config(agents={"list": [{"id": "a"}, {"id": "a"}]})


def test_default_agent_resolution() -> None:
    assert resolve_default_agent_id(_config()) == "main"
    listed = _config(agents={"list": [{"id": "a"}, {"id": "b"}]})
    assert resolve_default_agent_id(listed) == "a"
    flagged = _config(
        agents={"list": [{"id": "a"}, {"id": "b", "default": True}]}
    )
    assert resolve_default_agent_id(flagged) == "b"


def test_agent_overrides_merge_over_defaults() -> None:
    config = _config(
        agents={
            "defaults": {"memory_search": {"chunking": {"tokens": 300}}},
            "list": [
                {
                    "id": "coder",
                    "memory_search": {
                        "sources": ["memory", "sessions"],
                        "chunking": {"overlap": 10},
                    },
                },
                {"id": "quiet", "memory_search": {"enabled": False}},
            ],
        }
    )

    coder = resolve_memory_search_settings(config, "coder")
    plain = resolve_memory_search_settings(config, "unlisted")

    assert coder is not None and plain is not None
    assert coder.chunking.tokens == 300
    assert coder.chunking.overlap == 10
    assert coder.has_source(MemorySource.SESSIONS)
    assert plain.chunking.overlap == 80
    assert not plain.has_source(MemorySource.SESSIONS)
    assert resolve_memory_search_settings(config, "quiet") is None


def test_cache_fingerprint_tracks_settings() -> None:
    base = MemorySearchSettings()
    same = MemorySearchSettings()
    changed = MemorySearchSettings(model="text-embedding-3-large")

    assert base.cache_fingerprint() == same.cache_fingerprint()
    assert base.cache_fingerprint() != changed.cache_fingerprint()


def test_load_user_config_handles_missing_and_invalid(tmp_path: Path) -> None:
    assert load_user_config(tmp_path / "missing.toml") == {}

    broken = tmp_path / "memdex.toml"
    broken.write_text("log_level = ", encoding="utf-8")
    with pytest.raises(tomllib.TOMLDecodeError):
        load_user_config(broken)


def test_rendered_config_loads_back(tmp_path: Path) -> None:
    config = _config(
        state_dir=str(tmp_path),
        agents={
            "defaults": {"memory_search": {"provider": "gemini"}},
            "list": [{"id": "coder", "default": True}],
        },
    )

    rendered = render_user_config(config)
    reloaded = load_config(
        defaults=load_packaged_defaults(),
        user_config=tomllib.loads(rendered),
    )

    assert rendered.startswith("# Generated by memdex init")
    assert reloaded.state_dir == tmp_path
    assert reloaded.agents.defaults == config.agents.defaults
    assert resolve_default_agent_id(reloaded) == "coder"
