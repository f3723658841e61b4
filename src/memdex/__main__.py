"""Console-script entry point for :mod:`memdex`."""

from __future__ import annotations

from memdex.cli import create_app


def main() -> None:
    """Execute the CLI application."""

    app = create_app()
    app(prog_name="memdex")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()


__all__ = ["main"]
