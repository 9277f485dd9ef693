"""Typed runtime configuration for explore_bridge."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

MODEL_ENV = "EXPLORE_BRIDGE_MODEL"
TOOL_TIMEOUT_ENV = "EXPLORE_BRIDGE_TOOL_TIMEOUT_S"
DEFAULT_MAX_STEPS_ENV = "EXPLORE_BRIDGE_DEFAULT_MAX_STEPS"
MAX_STEPS_LIMIT_ENV = "EXPLORE_BRIDGE_MAX_STEPS_LIMIT"
MAX_RESULT_ROWS_ENV = "EXPLORE_BRIDGE_MAX_RESULT_ROWS"
EXECUTION_TIMEOUT_ENV = "EXPLORE_BRIDGE_EXECUTION_TIMEOUT_S"
TOOL_RESULT_MAX_LENGTH_ENV = "EXPLORE_BRIDGE_TOOL_RESULT_MAX_LENGTH"
TABLE_NAME_ENV = "EXPLORE_BRIDGE_TABLE_NAME"
SERVER_URL_ENV = "EXPLORE_BRIDGE_SERVER_URL"

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TOOL_TIMEOUT_S: float = 30.0
"""Seconds a registered call may stay pending before it expires."""

DEFAULT_MAX_STEPS: int = 10
"""Step budget when an exploration request does not name one."""

DEFAULT_MAX_STEPS_LIMIT: int = 25
"""Hard ceiling on any requested step budget."""

DEFAULT_MAX_RESULT_ROWS: int = 1000
DEFAULT_EXECUTION_TIMEOUT_S: float = 20.0
DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
DEFAULT_TABLE_NAME = "t_parsed"
DEFAULT_SERVER_URL = "http://127.0.0.1:8000"

T = TypeVar("T")


def _env_value(name: str, default: T, parse: Callable[[str], T], valid: Callable[[T], bool]) -> T:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; defaulting to %r.", name, raw, default)
        return default
    if not valid(value):
        logger.warning("Out-of-range %s=%r; defaulting to %r.", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime policy resolved once and passed explicitly to the bridge components."""

    model: str = DEFAULT_MODEL
    tool_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S
    default_max_steps: int = DEFAULT_MAX_STEPS
    max_steps_limit: int = DEFAULT_MAX_STEPS_LIMIT
    max_result_rows: int = DEFAULT_MAX_RESULT_ROWS
    execution_timeout_s: float = DEFAULT_EXECUTION_TIMEOUT_S
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    table_name: str = DEFAULT_TABLE_NAME
    server_url: str = DEFAULT_SERVER_URL

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Build typed config from environment variables."""
        positive_float = lambda v: v > 0  # noqa: E731
        positive_int = lambda v: v > 0  # noqa: E731

        max_steps_limit = _env_value(MAX_STEPS_LIMIT_ENV, DEFAULT_MAX_STEPS_LIMIT, int, positive_int)
        default_max_steps = _env_value(
            DEFAULT_MAX_STEPS_ENV, DEFAULT_MAX_STEPS, int, lambda v: v >= 0
        )
        if default_max_steps > max_steps_limit:
            logger.warning(
                "%s=%d exceeds %s=%d; clamping.",
                DEFAULT_MAX_STEPS_ENV,
                default_max_steps,
                MAX_STEPS_LIMIT_ENV,
                max_steps_limit,
            )
            default_max_steps = max_steps_limit

        return cls(
            model=os.environ.get(MODEL_ENV, DEFAULT_MODEL).strip() or DEFAULT_MODEL,
            tool_timeout_s=_env_value(TOOL_TIMEOUT_ENV, DEFAULT_TOOL_TIMEOUT_S, float, positive_float),
            default_max_steps=default_max_steps,
            max_steps_limit=max_steps_limit,
            max_result_rows=_env_value(MAX_RESULT_ROWS_ENV, DEFAULT_MAX_RESULT_ROWS, int, positive_int),
            execution_timeout_s=_env_value(
                EXECUTION_TIMEOUT_ENV, DEFAULT_EXECUTION_TIMEOUT_S, float, positive_float
            ),
            tool_result_max_length=_env_value(
                TOOL_RESULT_MAX_LENGTH_ENV, DEFAULT_TOOL_RESULT_MAX_LENGTH, int, positive_int
            ),
            table_name=os.environ.get(TABLE_NAME_ENV, DEFAULT_TABLE_NAME).strip() or DEFAULT_TABLE_NAME,
            server_url=os.environ.get(SERVER_URL_ENV, DEFAULT_SERVER_URL).rstrip("/"),
        )

    def clamp_max_steps(self, requested: int | None) -> int:
        """Resolve a requested step budget against the default and the hard limit."""
        if requested is None:
            return self.default_max_steps
        return max(0, min(int(requested), self.max_steps_limit))
