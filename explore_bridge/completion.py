"""Completion handling: the remote executor reporting a tool call's outcome.

``complete_call`` is the transport-free core of ``POST /tool-callback``. A
completion for an unknown, expired, or already-settled call id is expected
traffic (late duplicates, post-timeout answers) and yields a not-found outcome
rather than an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from explore_bridge.errors import NotFoundError
from explore_bridge.registry import CallRegistry

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "Unknown error"


class CallbackPayload(BaseModel):
    """Body of a completion. ``toolCallId`` is accepted as an alias of ``callId``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("callId", "toolCallId", "call_id"),
        serialization_alias="callId",
    )
    success: bool
    result: Any = None
    error: str | None = None


@dataclass(frozen=True)
class CompletionOutcome:
    call_id: str
    accepted: bool
    outcome: str  # "resolved" | "rejected" | "not-found"

    def to_response(self) -> dict[str, Any]:
        if not self.accepted:
            return {"error": "not found or already resolved", "callId": self.call_id}
        return {"success": True, "callId": self.call_id, "outcome": self.outcome}

    def raise_for_outcome(self) -> "CompletionOutcome":
        """Raise NotFoundError for a not-found outcome; otherwise return self."""
        if not self.accepted:
            raise NotFoundError(f"Tool call {self.call_id!r} not found or already resolved")
        return self


def complete_call(registry: CallRegistry, payload: CallbackPayload) -> CompletionOutcome:
    """Resolve or reject the pending call named by ``payload``.

    ``success`` with a non-null result resolves; anything else rejects with
    the supplied error text, or "Unknown error" when none was given.
    """
    if payload.success and payload.result is not None:
        accepted = registry.resolve(payload.call_id, payload.result)
        outcome = "resolved"
    else:
        accepted = registry.reject(payload.call_id, payload.error or UNKNOWN_ERROR)
        outcome = "rejected"

    if not accepted:
        logger.info("BRIDGE_CALLBACK_NOT_FOUND call_id=%s success=%s", payload.call_id, payload.success)
        return CompletionOutcome(call_id=payload.call_id, accepted=False, outcome="not-found")

    logger.debug("BRIDGE_CALLBACK call_id=%s outcome=%s", payload.call_id, outcome)
    return CompletionOutcome(call_id=payload.call_id, accepted=True, outcome=outcome)
