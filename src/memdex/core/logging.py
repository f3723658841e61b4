"""Structured logging setup for :mod:`memdex`."""

from __future__ import annotations

import gzip
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import shutil
from typing import Any, Iterable

from rich.console import Console
from rich.logging import RichHandler
import structlog

Logger = structlog.stdlib.BoundLogger

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)
_CONSOLE_RENDERER = structlog.dev.ConsoleRenderer(colors=False)
_JSON_RENDERER = structlog.processors.JSONRenderer(sort_keys=True)

_BACKUP_COUNT = 7
LOG_FILENAME = "memdex.log"


def _shared_pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _TIMESTAMPER,
    ]


def _parse_level(level: str) -> int:
    """Translate a level name such as ``"debug"`` into a logging constant.

    Raises:
        ValueError: If the name is not a known logging level.
    """

    name = level.strip().upper()
    value = logging.getLevelName(name)
    if isinstance(value, str):  # unknown names echo back as "Level X"
        raise ValueError(f"Unsupported log level: {level!r}")
    return value


def _install_handlers(
    root: logging.Logger,
    handlers: Iterable[logging.Handler],
) -> None:
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)


def _configure_structlog() -> None:
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_shared_pre_chain(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as target:
        shutil.copyfileobj(src, target)
    Path(source).unlink(missing_ok=True)


def _file_handler(log_file: Path, level: int) -> TimedRotatingFileHandler:
    """Return a midnight-rotating JSON handler with gzip archives."""

    handler = TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=_BACKUP_COUNT,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.setLevel(level)
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _gzip_rotator
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_JSON_RENDERER,
            foreign_pre_chain=_shared_pre_chain(),
        )
    )
    return handler


def _console_handler(level: int, console: Console | None) -> RichHandler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_CONSOLE_RENDERER,
            foreign_pre_chain=_shared_pre_chain(),
        )
    )
    return handler


def configure_logging(
    *,
    level: str = "INFO",
    state_dir: str | Path | None = None,
    console: Console | None = None,
) -> Path | None:
    """Wire structlog into stdlib logging with console and file sinks.

    Args:
        level: Log level name applied to the root logger (case-insensitive).
        state_dir: Optional memdex state directory; when provided a JSON log
            file is written to ``<state_dir>/logs/memdex.log``.
        console: Optional Rich console override, primarily for testing.

    Returns:
        The log file path when file logging is enabled, otherwise ``None``.

    Raises:
        ValueError: If ``level`` is not a recognized log level name.

    Example:
        >>> from pathlib import Path
        >>> path = configure_logging(
        ...     level="debug", state_dir=Path("/tmp/memdex-log-example")
        ... )
        >>> path.name
        'memdex.log'
    """

    log_level = _parse_level(level)

    root = logging.getLogger()
    root.setLevel(log_level)
    _configure_structlog()

    handlers: list[logging.Handler] = [_console_handler(log_level, console)]

    log_file: Path | None = None
    if state_dir is not None:
        base = Path(state_dir).expanduser().resolve(strict=False)
        log_dir = base / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / LOG_FILENAME
        handlers.append(_file_handler(log_file, log_level))

    _install_handlers(root, handlers)
    logging.captureWarnings(True)
    return log_file


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structlog logger bound to ``initial_context``.

    Example:
        >>> logger = get_logger(__name__, component="memory-sync")
        >>> isinstance(logger, structlog.stdlib.BoundLogger)
        True
    """

    return structlog.get_logger(name).bind(**initial_context)


__all__ = ["LOG_FILENAME", "Logger", "configure_logging", "get_logger"]
