"""Structured error types for explore_bridge.

Tool-level failures (bad input, timeout, remote failure) are recovered inside
the step loop and fed back to the model. Session-level failures (model backend,
cancellation) end the exploration:

    from explore_bridge.errors import CallTimeoutError, RemoteExecutionError

    try:
        value = await registry.register(call_id, "executeSQLQuery", args)
    except CallTimeoutError:
        # The remote executor never answered
        ...
    except RemoteExecutionError as exc:
        # The remote executor answered with a failure message
        ...
"""

from __future__ import annotations

import re
from typing import Any

import litellm


class BridgeError(Exception):
    """Base for all explore_bridge errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class InvalidInputError(BridgeError):
    """Tool input failed schema or guard validation. Never reaches the registry."""


class SQLValidationError(InvalidInputError):
    """SQL rejected by the read-only guard."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class DuplicateCallError(BridgeError):
    """A call id was registered while a call with the same id is still pending."""


class CallTimeoutError(BridgeError, TimeoutError):
    """No completion arrived within the call's deadline."""


class CallCancelledError(BridgeError):
    """The owning session was cancelled while the call was pending."""


class NotFoundError(BridgeError):
    """Completion for an unknown, expired, or already settled call."""


class RemoteExecutionError(BridgeError):
    """The remote executor reported a failure for the call."""


class QueryExecutionError(BridgeError):
    """The local query engine failed to run a statement."""


class ModelBackendError(BridgeError):
    """The language-model backend failed; terminal for the session."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        kind: str = "unknown",
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.retryable = retryable
        self.kind = kind


# litellm exception class name -> (kind, retryable)
_LITELLM_KINDS: tuple[tuple[str, str, bool], ...] = (
    ("AuthenticationError", "auth", False),
    ("PermissionDeniedError", "auth", False),
    ("NotFoundError", "model_not_found", False),
    ("ContentPolicyViolationError", "content_filter", False),
    ("BudgetExceededError", "quota", False),
    ("RateLimitError", "rate_limit", True),
    ("InternalServerError", "transient", True),
    ("ServiceUnavailableError", "transient", True),
    ("APIConnectionError", "transient", True),
    ("BadGatewayError", "transient", True),
    ("Timeout", "transient", True),
)


def _classify_model_error(error: Exception) -> tuple[str, bool]:
    for name, kind, retryable in _LITELLM_KINDS:
        candidate = getattr(litellm, name, None)
        if isinstance(candidate, type) and isinstance(error, candidate):
            return kind, retryable

    error_str = str(error).lower()
    if "401" in error_str or "unauthorized" in error_str or "api key" in error_str:
        return "auth", False
    if "rate" in error_str and "limit" in error_str:
        return "rate_limit", True
    if any(p in error_str for p in ("timeout", "timed out", "connection", "502", "503")):
        return "transient", True
    return "unknown", False


def wrap_model_error(error: Exception) -> ModelBackendError:
    """Wrap a model backend exception in ModelBackendError.

    Already-wrapped errors are returned unchanged.
    """
    if isinstance(error, ModelBackendError):
        return error
    kind, retryable = _classify_model_error(error)
    return ModelBackendError(
        f"{type(error).__name__}: {error}",
        retryable=retryable,
        kind=kind,
        original=error,
    )


# Recoverable error patterns -> corrective hint for the model's next step.
_HINT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(no such column|unknown column|column .* not found|referenced column)", re.I),
        "Your query referenced an unknown column. Check column names against the dataset schema "
        "and quote names containing spaces.",
    ),
    (
        re.compile(r"(no such table|table .* does not exist|table .* not found)", re.I),
        "The table name is wrong. Query the dataset table named in the instructions.",
    ),
    (
        re.compile(r"(syntax error|parser error|near \")", re.I),
        "The SQL has a syntax error. Simplify the statement and try again.",
    ),
    (
        re.compile(r"read-only", re.I),
        "Only a single SELECT, WITH, or PRAGMA statement without comments is allowed.",
    ),
    (
        re.compile(r"(timed out|timeout)", re.I),
        "The query did not finish in time. Add filters or aggregate before returning rows.",
    ),
)


def hint_for_error(message: str, default: str | None = None) -> str | None:
    """Return a corrective hint for a recoverable tool error, or ``default``."""
    for pattern, hint in _HINT_PATTERNS:
        if pattern.search(message or ""):
            return hint
    return default
