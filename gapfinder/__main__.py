"""Module executed when running ``python -m gapfinder``."""

from __future__ import annotations

import argparse
from typing import Sequence

import uvicorn

from app.config import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gapfinder",
        description="Serve the Gap Finder collection search API.",
    )
    parser.add_argument("--host", default=settings.server_host, help="interface to bind")
    parser.add_argument("--port", type=int, default=settings.server_port, help="port to bind")
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=settings.environment == "development",
        help="restart the server when source files change",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Start uvicorn, letting command line flags override the settings."""

    args = build_parser().parse_args(argv)
    uvicorn.run("app.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
