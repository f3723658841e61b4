"""Filesystem layout helpers for :mod:`memdex`."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping

from memdex.core.config import AppConfig, MemorySearchSettings

__all__ = [
    "AgentPaths",
    "StatePaths",
    "expand_path_template",
    "resolve_agent_paths",
    "resolve_state_paths",
]

CONFIG_FILENAME = "memdex.toml"


@dataclass(frozen=True, slots=True)
class StatePaths:
    """Resolved locations inside the memdex state directory.

    Example:
        >>> from pathlib import Path
        >>> paths = StatePaths(
        ...     state_dir=Path("/tmp/memdex"),
        ...     config_file=Path("/tmp/memdex/memdex.toml"),
        ...     logs_dir=Path("/tmp/memdex/logs"),
        ... )
        >>> paths.logs_dir.name
        'logs'
    """

    state_dir: Path
    config_file: Path
    logs_dir: Path


@dataclass(frozen=True, slots=True)
class AgentPaths:
    """Per-agent locations used by the memory index."""

    agent_id: str
    workspace_dir: Path
    sessions_dir: Path
    store_path: Path


def _normalize(candidate: str | Path) -> Path:
    raw = Path(candidate).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    return raw.resolve(strict=False)


def expand_path_template(
    template: str,
    *,
    state_dir: Path,
    agent_id: str | None = None,
) -> Path:
    """Expand ``{state_dir}``/``{agent_id}`` tokens and ``~`` in a path.

    Example:
        >>> from pathlib import Path
        >>> expand_path_template(
        ...     "{state_dir}/memory/{agent_id}.sqlite",
        ...     state_dir=Path("/srv/memdex"),
        ...     agent_id="main",
        ... ).as_posix()
        '/srv/memdex/memory/main.sqlite'
    """

    value = template.replace("{state_dir}", str(state_dir))
    if agent_id is not None:
        value = value.replace("{agent_id}", agent_id)
    return _normalize(value)


def resolve_state_paths(
    *,
    state_dir_override: Path | None = None,
    config_override: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> StatePaths:
    """Resolve the state directory and config file locations.

    Args:
        state_dir_override: Optional override provided by CLI flags.
        config_override: Optional explicit config file path.
        environ: Environment mapping; defaults to :data:`os.environ`.

    Raises:
        ValueError: If the resolved state directory is a regular file.
    """

    env = os.environ if environ is None else environ
    env_state = env.get("MEMDEX_STATE_DIR")
    base = state_dir_override or env_state or Path.home() / ".memdex"
    state_dir = _normalize(base)
    if state_dir.is_file():
        raise ValueError(f"State directory path is a file: {state_dir}")

    env_config = env.get("MEMDEX_CONFIG")
    if config_override is not None:
        config_file = _normalize(config_override)
    elif env_config:
        config_file = _normalize(env_config)
    else:
        config_file = state_dir / CONFIG_FILENAME

    return StatePaths(
        state_dir=state_dir,
        config_file=config_file,
        logs_dir=state_dir / "logs",
    )


def resolve_agent_paths(
    config: AppConfig,
    agent_id: str,
    settings: MemorySearchSettings,
) -> AgentPaths:
    """Return workspace, transcript and index paths for ``agent_id``."""

    state_dir = _normalize(config.state_dir)
    agent = config.agents.find(agent_id)

    workspace_template = config.agents.defaults.workspace
    if agent is not None and agent.workspace:
        workspace_template = agent.workspace
    workspace_dir = expand_path_template(
        workspace_template,
        state_dir=state_dir,
        agent_id=agent_id,
    )

    if agent is not None and agent.sessions_dir:
        sessions_dir = expand_path_template(
            agent.sessions_dir,
            state_dir=state_dir,
            agent_id=agent_id,
        )
    else:
        sessions_dir = state_dir / "agents" / agent_id / "sessions"

    store_path = expand_path_template(
        settings.store.path,
        state_dir=state_dir,
        agent_id=agent_id,
    )
    return AgentPaths(
        agent_id=agent_id,
        workspace_dir=workspace_dir,
        sessions_dir=sessions_dir,
        store_path=store_path,
    )
