"""Command-line interface primitives for :mod:`memdex`.

This module exposes the Typer application behind the ``memdex`` console
script, wiring ``init`` and the ``memory`` command group.

Example:
    >>> import typer
    >>> from memdex.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import typer
from pydantic import ValidationError

from memdex.cli.init import init_state
from memdex.cli.memory import create_memory_app
from memdex.core.logging import configure_logging, get_logger

_app_help = (
    "Semantic memory index for agent notes and transcripts."
    "\n\n"
    "Use `memdex init` to create the state directory and `memdex.toml`."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``memdex`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    app.add_typer(create_memory_app(), name="memory")

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Create the state directory and seed memdex.toml.",
    )
    def init_command(
        state_dir: Path | None = typer.Option(
            None,
            "--state-dir",
            "-s",
            help=(
                "Override the state directory (defaults to $HOME/.memdex "
                "or MEMDEX_STATE_DIR)."
            ),
        ),
        config_path: Path | None = typer.Option(
            None,
            "--config",
            "-c",
            help="Where to write memdex.toml (defaults to MEMDEX_CONFIG).",
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Overwrite an existing memdex.toml.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Initialize the local state directory."""

        try:
            result = init_state(
                state_dir=state_dir,
                config_path=config_path,
                force=force,
                log_level=log_level,
            )
        except (
            OSError,
            ValueError,
            ValidationError,
            tomllib.TOMLDecodeError,
        ) as exc:
            typer.secho(f"Failed to initialize: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=result.config.log_level,
            state_dir=result.paths.state_dir,
        )
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            state_dir=str(result.paths.state_dir),
            config=str(result.paths.config_file),
            written=result.written,
        )

        typer.secho("State initialized", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  state dir: {result.paths.state_dir}")
        typer.echo(f"  config: {result.paths.config_file}")
        typer.echo(f"  workspace: {result.workspace_dir}")
        typer.echo(f"  log level: {result.config.log_level}")
        if not result.written:
            typer.echo(
                "  note: existing config left untouched (use --force)"
            )

    return app


__all__ = ["create_app"]
