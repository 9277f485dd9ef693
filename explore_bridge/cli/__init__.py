"""CLI command modules for ``python -m explore_bridge``."""

from explore_bridge.cli.ask import cmd_ask, register_parser as register_ask_parser
from explore_bridge.cli.serve import cmd_serve, register_parser as register_serve_parser

__all__ = [
    "cmd_ask",
    "cmd_serve",
    "register_ask_parser",
    "register_serve_parser",
]
