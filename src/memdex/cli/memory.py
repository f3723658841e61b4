"""Typer command group for memory index operations."""

from __future__ import annotations

import asyncio
import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer
from pydantic import ValidationError

from memdex.cli.init import load_app_config
from memdex.core.config import AppConfig, resolve_default_agent_id
from memdex.core.logging import Logger, configure_logging, get_logger
from memdex.core.paths import StatePaths, resolve_state_paths
from memdex.modules.memory.errors import (
    EmbeddingProviderError,
    MemoryIndexError,
    ProviderRegistryError,
)
from memdex.modules.memory.manager import (
    MemoryIndexManager,
    MemoryIndexRegistry,
)
from memdex.modules.memory.models import MemoryStatus
from memdex.modules.memory.providers import (
    ProviderRegistry,
    create_default_provider_registry,
)
from memdex.modules.memory.sync import SyncReason

T = TypeVar("T")

_FAILURES = (MemoryIndexError, EmbeddingProviderError, ProviderRegistryError)


@dataclass(slots=True)
class MemoryCLIContext:
    """Shared context carried across `memdex memory` commands."""

    paths: StatePaths
    config: AppConfig
    providers: ProviderRegistry
    logger: Logger


_memory_app = typer.Typer(
    name="memory",
    help=(
        "Inspect, index and search an agent's memory.\n\n"
        "Memory files (MEMORY.md and memory/*.md) and, when enabled, session "
        "transcripts are embedded into a local SQLite index."
    ),
    no_args_is_help=True,
    invoke_without_command=False,
)


def _require_context(ctx: typer.Context) -> MemoryCLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, MemoryCLIContext):
        typer.secho(
            "Internal error: memory context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return context


def _handle_failure(
    action: str,
    error: Exception,
    *,
    logger: Logger,
) -> None:
    typer.secho(f"Memory {action} failed: {error}", fg=typer.colors.RED)
    logger.error("memory-action-failed", action=action, error=str(error))
    raise typer.Exit(code=1) from error


def _run_with_manager(
    context: MemoryCLIContext,
    agent: str | None,
    action: Callable[[MemoryIndexManager], Awaitable[T]],
) -> tuple[str, T | None]:
    """Open the agent's index, run ``action`` and always close it.

    Returns ``None`` as the result when memory search is disabled.
    """

    agent_id = agent or resolve_default_agent_id(context.config)

    async def _runner() -> T | None:
        registry = MemoryIndexRegistry(
            provider_registry=context.providers,
            watcher_factory=None,
            logger=context.logger,
        )
        try:
            manager = await registry.get(context.config, agent_id)
            if manager is None:
                return None
            return await action(manager)
        finally:
            await registry.close_all()

    return agent_id, asyncio.run(_runner())


def _disabled(agent_id: str) -> None:
    typer.secho(
        f"Memory search disabled for agent {agent_id}.",
        fg=typer.colors.YELLOW,
    )


def _format_vector(status: MemoryStatus) -> str:
    vector = status.vector
    if not vector.enabled:
        return "disabled"
    if vector.available is None:
        state = "unknown"
    else:
        state = "ready" if vector.available else "unavailable"
    parts = [state]
    if vector.dims:
        parts.append(f"dims={vector.dims}")
    if vector.extension_path:
        parts.append(f"path={vector.extension_path}")
    if vector.load_error:
        parts.append(f"error={vector.load_error}")
    return " ".join(parts)


@_memory_app.callback()
def configure_memory_commands(
    ctx: typer.Context,
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        "-s",
        help="Override the state directory (defaults to MEMDEX_STATE_DIR).",
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to memdex.toml (defaults to MEMDEX_CONFIG).",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Override log level for memory commands.",
    ),
) -> None:
    """Initialize common memory CLI context."""

    try:
        paths = resolve_state_paths(
            state_dir_override=state_dir,
            config_override=config_path,
        )
        config = load_app_config(
            paths,
            state_dir_override=state_dir,
            log_level=log_level,
        )
    except (ValueError, ValidationError, tomllib.TOMLDecodeError) as exc:
        typer.secho(f"Failed to load config: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, state_dir=config.state_dir)
    logger = get_logger(__name__, command="memory")

    ctx.obj = MemoryCLIContext(
        paths=paths,
        config=config,
        providers=create_default_provider_registry(),
        logger=logger,
    )


@_memory_app.command(
    "status",
    help="Show index counts, provider, sources and vector state.",
)
def status_memory(
    ctx: typer.Context,
    agent: str | None = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent id (defaults to the configured default agent).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the status payload as JSON.",
    ),
) -> None:
    context = _require_context(ctx)

    async def _status(manager: MemoryIndexManager) -> MemoryStatus:
        return manager.status()

    try:
        agent_id, status = _run_with_manager(context, agent, _status)
    except _FAILURES as exc:
        _handle_failure("status", exc, logger=context.logger)
        return

    if status is None:
        _disabled(agent_id)
        return

    if json_output:
        payload = {"agent_id": agent_id, **status.to_mapping()}
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.secho(
        f"Memory search ({agent_id})",
        fg=typer.colors.CYAN,
        bold=True,
    )
    provider = status.provider
    if status.requested_provider != status.provider:
        provider = f"{provider} (requested: {status.requested_provider})"
    typer.echo(f"  provider: {provider}")
    typer.echo(f"  model: {status.model}")
    sources = ", ".join(source.value for source in status.sources)
    typer.echo(f"  sources: {sources}")
    typer.echo(f"  indexed: {status.files} files, {status.chunks} chunks")
    typer.echo(f"  dirty: {'yes' if status.dirty else 'no'}")
    typer.echo(f"  workspace: {status.workspace_dir}")
    typer.echo(f"  store: {status.store_path}")
    typer.echo(f"  vector: {_format_vector(status)}")
    if status.fallback is not None:
        typer.secho(
            f"  fallback: {status.fallback.from_provider} "
            f"({status.fallback.reason})",
            fg=typer.colors.YELLOW,
        )


@_memory_app.command(
    "index",
    help="Sync memory files (and sessions when enabled) into the index.",
)
def index_memory(
    ctx: typer.Context,
    agent: str | None = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent id (defaults to the configured default agent).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Drop the index and re-embed every file.",
    ),
) -> None:
    context = _require_context(ctx)

    async def _index(manager: MemoryIndexManager) -> MemoryStatus:
        await manager.sync(reason=SyncReason.CLI, force=force)
        return manager.status()

    try:
        agent_id, status = _run_with_manager(context, agent, _index)
    except _FAILURES as exc:
        _handle_failure("index", exc, logger=context.logger)
        return

    if status is None:
        _disabled(agent_id)
        return

    typer.secho(
        f"Memory index updated ({agent_id}): {status.files} files, "
        f"{status.chunks} chunks",
        fg=typer.colors.GREEN,
    )
    context.logger.info(
        "memory-index",
        agent_id=agent_id,
        force=force,
        files=status.files,
        chunks=status.chunks,
    )


@_memory_app.command(
    "search",
    help="Search the memory index for QUERY.",
)
def search_memory(
    ctx: typer.Context,
    query: str = typer.Argument(..., metavar="QUERY"),
    agent: str | None = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent id (defaults to the configured default agent).",
    ),
    max_results: int | None = typer.Option(
        None,
        "--max-results",
        "-n",
        min=1,
        help="Maximum results (defaults to query.max_results).",
    ),
    min_score: float | None = typer.Option(
        None,
        "--min-score",
        min=0.0,
        max=1.0,
        help="Minimum score (defaults to query.min_score).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit results as JSON.",
    ),
) -> None:
    context = _require_context(ctx)

    async def _search(manager: MemoryIndexManager):
        return await manager.search(
            query,
            max_results=max_results,
            min_score=min_score,
        )

    try:
        agent_id, results = _run_with_manager(context, agent, _search)
    except _FAILURES as exc:
        _handle_failure("search", exc, logger=context.logger)
        return

    if results is None:
        _disabled(agent_id)
        return

    if json_output:
        payload = [result.to_mapping() for result in results]
        typer.echo(json.dumps({"results": payload}, indent=2))
        return

    if not results:
        typer.secho("No matches.", fg=typer.colors.YELLOW)
        return
    for result in results:
        typer.secho(
            f"{result.score:.3f} {result.path}:"
            f"{result.start_line}-{result.end_line}",
            fg=typer.colors.CYAN,
        )
        typer.echo(f"  {result.snippet}")


def create_memory_app() -> typer.Typer:
    return _memory_app


__all__ = ["MemoryCLIContext", "create_memory_app"]
