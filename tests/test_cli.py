from __future__ import annotations

import json
import subprocess
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI

from explore_bridge.__main__ import build_parser, main
from explore_bridge.client import ExplorationSummary

CLI_CMDS = [
    ["--help"],
    ["serve", "--help"],
    ["ask", "--help"],
]


def test_cli_help_smoke() -> None:
    for cmd in CLI_CMDS:
        proc = subprocess.run(
            [sys.executable, "-m", "explore_bridge", *cmd],
            capture_output=True,
            text=True,
            check=False,
        )
        assert proc.returncode == 0, f"command failed: {cmd}\nstdout={proc.stdout}\nstderr={proc.stderr}"
        assert "usage:" in proc.stdout.lower()


class TestParser:
    def test_serve_defaults(self) -> None:
        args = build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.model is None
        assert args.log_level == "INFO"

    def test_ask_options(self) -> None:
        args = build_parser().parse_args([
            "ask", "data.csv", "Top region?", "--max-steps", "4", "--format", "json",
            "--server", "http://bridge:9000",
        ])
        assert args.csv == "data.csv"
        assert args.question == "Top region?"
        assert args.max_steps == 4
        assert args.format == "json"
        assert args.server == "http://bridge:9000"

    def test_no_command_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1


class TestCommands:
    @patch("explore_bridge.cli.serve.uvicorn.run")
    def test_serve_runs_app(self, mock_run: MagicMock) -> None:
        main(["--log-level", "WARNING", "serve", "--port", "9001", "--model", "gpt-4o-mini"])
        app = mock_run.call_args.args[0]
        assert isinstance(app, FastAPI)
        assert app.state.config.model == "gpt-4o-mini"
        assert mock_run.call_args.kwargs == {"host": "127.0.0.1", "port": 9001, "log_level": "warning"}

    @patch("explore_bridge.cli.ask.RemoteExplorer.explore", new_callable=AsyncMock)
    def test_ask_prints_json(self, mock_explore: AsyncMock, tmp_path, capsys) -> None:
        path = tmp_path / "sales.csv"
        path.write_text("region,sales\nnorth,10\nsouth,20\n", encoding="utf-8")
        mock_explore.return_value = ExplorationSummary(
            session_id="sess_1", text="South leads.", stop_reason="model-emitted-no-further-tool-calls", steps=2,
        )

        main(["ask", str(path), "Top region?", "--format", "json", "--max-steps", "3"])

        out = json.loads(capsys.readouterr().out)
        assert out["text"] == "South leads."
        assert out["steps"] == 2
        assert mock_explore.call_args.kwargs["max_steps"] == 3

    @patch("explore_bridge.cli.ask.RemoteExplorer.explore", new_callable=AsyncMock)
    def test_ask_error_exits_nonzero(self, mock_explore: AsyncMock, tmp_path, capsys) -> None:
        path = tmp_path / "sales.csv"
        path.write_text("region,sales\nnorth,10\n", encoding="utf-8")
        mock_explore.return_value = ExplorationSummary(error="AuthenticationError: bad key")

        with pytest.raises(SystemExit) as exc_info:
            main(["ask", str(path), "Anything?"])
        assert exc_info.value.code == 1
        assert "bad key" in capsys.readouterr().err
