"""Tool-call bridge for agentic data exploration.

The model runs in the orchestrator; the data and the query engine stay with
the remote executor. Tool calls cross the gap as stream events, and outcomes
come back through a completion callback keyed by call id.

Usage:
    # Orchestrator
    from explore_bridge import create_app
    app = create_app()                      # uvicorn --factory explore_bridge:create_app

    # Remote executor
    from explore_bridge import RemoteExplorer, SQLiteQueryEngine
    engine = SQLiteQueryEngine.from_csv("sales.csv")
    summary = await RemoteExplorer(engine, base_url="http://127.0.0.1:8000").explore(
        "Which region grew fastest?"
    )

    # Embedded, no HTTP
    from explore_bridge import DEFAULT_TOOLS, ExplorationSession, LiteLLMStepModel, get_registry, run_exploration
    session = ExplorationSession(registry=get_registry())
    result = await run_exploration(session, LiteLLMStepModel("gpt-4o"), DEFAULT_TOOLS, max_steps=10)
"""

import logging as _logging
import os as _os
from pathlib import Path as _Path

_log = _logging.getLogger(__name__)


def _load_api_keys() -> int:
    """Load provider API keys from the env file named by EXPLORE_BRIDGE_KEYS_FILE.

    Skips comments, empty lines, and keys already set in the environment.
    Returns the number of keys loaded.
    """
    path = _os.environ.get("EXPLORE_BRIDGE_KEYS_FILE")
    if not path:
        return 0
    keys_file = _Path(path).expanduser()
    if not keys_file.is_file():
        _log.warning("EXPLORE_BRIDGE_KEYS_FILE=%s does not exist; skipping", keys_file)
        return 0
    loaded = 0
    for line in keys_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or key in _os.environ:
            continue
        _os.environ[key] = value.strip().strip("\"'")
        loaded += 1
    if loaded:
        _log.debug("explore_bridge: loaded %d API keys from %s", loaded, keys_file)
    return loaded


_load_api_keys()

from explore_bridge.agent_loop import (  # noqa: E402
    ExplorationResult,
    ToolCallRecord,
    build_exploration_messages,
    run_exploration,
)
from explore_bridge.client import ExplorationSummary, RemoteExplorer  # noqa: E402
from explore_bridge.completion import CallbackPayload, CompletionOutcome, complete_call  # noqa: E402
from explore_bridge.config import BridgeConfig  # noqa: E402
from explore_bridge.engine import QueryEngine, QueryResult, SQLiteQueryEngine  # noqa: E402
from explore_bridge.errors import (  # noqa: E402
    BridgeError,
    CallCancelledError,
    CallTimeoutError,
    DuplicateCallError,
    InvalidInputError,
    ModelBackendError,
    NotFoundError,
    QueryExecutionError,
    RemoteExecutionError,
    SQLValidationError,
)
from explore_bridge.model import LiteLLMStepModel, ModelTurn, StepModel  # noqa: E402
from explore_bridge.reconciler import (  # noqa: E402
    CompletionReporter,
    HttpCompletionReporter,
    RegistryCompletionReporter,
    StreamAccumulator,
    StreamReconciler,
)
from explore_bridge.registry import CallRegistry, PendingCall, get_registry, reset_registry  # noqa: E402
from explore_bridge.server import create_app  # noqa: E402
from explore_bridge.session import ExplorationSession, StopReason  # noqa: E402
from explore_bridge.sql_guard import is_read_only_sql, sanitize_sql, validate_sql  # noqa: E402
from explore_bridge.tools import (  # noqa: E402
    DEFAULT_TOOLS,
    SQL_QUERY_TOOL,
    VISUALIZATION_TOOL,
    RemoteTool,
    ToolFailure,
    ToolResult,
    ToolSuccess,
)

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "CallCancelledError",
    "CallRegistry",
    "CallTimeoutError",
    "CallbackPayload",
    "CompletionOutcome",
    "CompletionReporter",
    "DEFAULT_TOOLS",
    "DuplicateCallError",
    "ExplorationResult",
    "ExplorationSession",
    "ExplorationSummary",
    "HttpCompletionReporter",
    "InvalidInputError",
    "LiteLLMStepModel",
    "ModelBackendError",
    "ModelTurn",
    "NotFoundError",
    "PendingCall",
    "QueryEngine",
    "QueryExecutionError",
    "QueryResult",
    "RegistryCompletionReporter",
    "RemoteExecutionError",
    "RemoteExplorer",
    "RemoteTool",
    "SQLValidationError",
    "SQL_QUERY_TOOL",
    "SQLiteQueryEngine",
    "StepModel",
    "StopReason",
    "StreamAccumulator",
    "StreamReconciler",
    "ToolCallRecord",
    "ToolFailure",
    "ToolResult",
    "ToolSuccess",
    "VISUALIZATION_TOOL",
    "build_exploration_messages",
    "complete_call",
    "create_app",
    "get_registry",
    "is_read_only_sql",
    "reset_registry",
    "run_exploration",
    "sanitize_sql",
    "validate_sql",
]
