"""Core utilities shared across :mod:`memdex` modules.

The core namespace groups configuration loading, logging setup and path
resolution so the memory module stays focused on indexing and retrieval.

Example:
    >>> from memdex.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import AppConfig, MemorySearchSettings, load_config
from .logging import configure_logging, get_logger
from .paths import AgentPaths, StatePaths, resolve_agent_paths

__all__ = [
    "AgentPaths",
    "AppConfig",
    "MemorySearchSettings",
    "StatePaths",
    "configure_logging",
    "get_logger",
    "load_config",
    "resolve_agent_paths",
]
