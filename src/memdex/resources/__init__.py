"""Packaged resource helpers for :mod:`memdex`."""

from __future__ import annotations

from importlib import resources
from importlib.resources.abc import Traversable


def get_resource(relative_path: str) -> Traversable:
    """Return a traversable handle to a resource shipped with memdex.

    Raises:
        FileNotFoundError: If the resource is not part of the package.

    Example:
        >>> get_resource("memdex.defaults.toml").name
        'memdex.defaults.toml'
    """

    candidate = resources.files(__package__).joinpath(relative_path)
    if not candidate.is_file():
        raise FileNotFoundError(relative_path)
    return candidate


__all__ = ["get_resource"]
