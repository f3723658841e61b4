"""Helpers for the ``memdex init`` command."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping

from memdex.core.config import (
    AppConfig,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    load_user_config,
    render_user_config,
)
from memdex.core.paths import (
    StatePaths,
    expand_path_template,
    resolve_state_paths,
)


@dataclass(frozen=True, slots=True)
class InitResult:
    paths: StatePaths
    config: AppConfig
    workspace_dir: Path
    written: bool


def load_app_config(
    paths: StatePaths,
    *,
    state_dir_override: Path | None = None,
    log_level: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Apply the precedence stack for an already-resolved state layout.

    Raises:
        tomllib.TOMLDecodeError: If ``memdex.toml`` is not valid TOML.
        pydantic.ValidationError: If the merged payload is invalid.
    """

    cli_overrides: dict[str, object] = {}
    if state_dir_override is not None:
        cli_overrides["state_dir"] = str(paths.state_dir)
    if log_level:
        cli_overrides["log_level"] = log_level
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=load_user_config(paths.config_file),
        env_config=env_config_from_environ(
            os.environ if environ is None else environ
        ),
        cli_overrides=cli_overrides or None,
    )


def init_state(
    *,
    state_dir: Path | None = None,
    config_path: Path | None = None,
    force: bool = False,
    log_level: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> InitResult:
    """Create the state layout and seed ``memdex.toml``.

    An existing config file is left untouched unless ``force`` is set.

    Example:
        >>> from pathlib import Path
        >>> result = init_state(
        ...     state_dir=Path("/tmp/memdex-init-example"), environ={}
        ... )
        >>> result.paths.config_file.name
        'memdex.toml'
    """

    paths = resolve_state_paths(
        state_dir_override=state_dir,
        config_override=config_path,
        environ=environ,
    )
    config = load_app_config(
        paths,
        state_dir_override=paths.state_dir,
        log_level=log_level,
        environ=environ,
    )

    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    workspace_dir = expand_path_template(
        config.agents.defaults.workspace,
        state_dir=paths.state_dir,
    )
    workspace_dir.mkdir(parents=True, exist_ok=True)

    written = False
    if force or not paths.config_file.exists():
        paths.config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.config_file.write_text(
            render_user_config(config),
            encoding="utf-8",
        )
        written = True

    return InitResult(
        paths=paths,
        config=config,
        workspace_dir=workspace_dir,
        written=written,
    )


__all__ = ["InitResult", "init_state", "load_app_config"]
