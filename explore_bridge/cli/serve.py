"""Run the orchestrator HTTP service."""

from __future__ import annotations

import argparse
import dataclasses
from typing import Any

import uvicorn

from explore_bridge.config import BridgeConfig
from explore_bridge.server import create_app


def cmd_serve(args: argparse.Namespace) -> None:
    config = BridgeConfig.from_env()
    if args.model:
        config = dataclasses.replace(config, model=args.model)
    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def register_parser(subparsers: Any) -> None:
    parser = subparsers.add_parser("serve", help="Run the orchestrator (/explore, /tool-callback)")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--model", help="Override EXPLORE_BRIDGE_MODEL")
    parser.set_defaults(handler=cmd_serve)
