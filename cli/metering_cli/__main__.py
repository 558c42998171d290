"""Entry point for `python -m metering_cli` and `metering` console script."""

from __future__ import annotations

from metering_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
