"""Ask a question about a local CSV through a running orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from typing import Any

from explore_bridge.config import BridgeConfig
from explore_bridge.client import ExplorationSummary, RemoteExplorer
from explore_bridge.engine import SQLiteQueryEngine


def _print_summary(summary: ExplorationSummary, fmt: str) -> None:
    if fmt == "json":
        data = asdict(summary)
        data["messages"] = [m.to_wire() for m in summary.messages]
        print(json.dumps(data, indent=2, default=str))
        return

    print(summary.text or "(no answer)")
    print()
    print(f"stop reason: {summary.stop_reason}  steps: {summary.steps}  charts: {len(summary.charts)}")
    for chart in summary.charts:
        print(f"  - {chart['title']} ({chart.get('chartType') or 'chart'})")
    if summary.error:
        print(f"error: {summary.error}", file=sys.stderr)


def cmd_ask(args: argparse.Namespace) -> None:
    config = BridgeConfig.from_env()
    engine = SQLiteQueryEngine.from_csv(args.csv, table_name=config.table_name)
    try:
        explorer = RemoteExplorer(engine, base_url=args.server, config=config)
        summary = asyncio.run(explorer.explore(
            args.question,
            data_description=args.description,
            max_steps=args.max_steps,
        ))
    finally:
        engine.close()
    _print_summary(summary, args.format)
    if summary.error:
        sys.exit(1)


def register_parser(subparsers: Any) -> None:
    parser = subparsers.add_parser("ask", help="Explore a CSV file with a question")
    parser.add_argument("csv", help="CSV file with a header row")
    parser.add_argument("question", help="Question to answer from the data")
    parser.add_argument("--server", help="Orchestrator URL (default: EXPLORE_BRIDGE_SERVER_URL)")
    parser.add_argument("--description", help="Free-text description of the dataset")
    parser.add_argument("--max-steps", type=int, help="Step budget for this exploration")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    parser.set_defaults(handler=cmd_ask)
