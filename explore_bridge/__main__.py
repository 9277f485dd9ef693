"""Command line entry point.

Usage:
    python -m explore_bridge serve                          # orchestrator on :8000
    python -m explore_bridge serve --port 9000 --model gpt-4o-mini
    python -m explore_bridge ask sales.csv "Which region grew fastest?"
    python -m explore_bridge ask sales.csv "Top products?" --max-steps 5 --format json
"""

from __future__ import annotations

import argparse
import logging
import sys

from explore_bridge.cli import register_ask_parser, register_serve_parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="explore_bridge",
        description="Agentic data exploration with remote tool execution",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")
    register_serve_parser(sub)
    register_ask_parser(sub)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.handler(args)


if __name__ == "__main__":
    main()
