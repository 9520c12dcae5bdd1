"""Entry point for `python -m cascade_cli` and the `cadenza` console script."""

from __future__ import annotations

from cascade_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
