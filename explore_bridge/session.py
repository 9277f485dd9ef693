"""Exploration session state: one bounded conversation with the model."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from explore_bridge.events import SessionMessage, TextPart, ToolInvocationPart
from explore_bridge.registry import CallRegistry

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    MAX_STEPS = "max-steps-reached"
    NO_TOOL_CALLS = "model-emitted-no-further-tool-calls"
    CANCELLED = "caller-cancelled"


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


@dataclass
class ExplorationSession:
    """State owned by a single exploration request.

    ``messages`` is append-only: tool invocation parts are updated in place as
    their outcome arrives, but nothing is reordered or removed.
    ``model_messages`` is the chat-format context handed to the model.
    """

    registry: CallRegistry
    session_id: str = field(default_factory=new_session_id)
    messages: list[SessionMessage] = field(default_factory=list)
    model_messages: list[dict[str, Any]] = field(default_factory=list)
    step_count: int = 0
    stop_reason: StopReason | None = None
    _cancelled: bool = field(default=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def stopped(self) -> bool:
        return self.stop_reason is not None

    def stop(self, reason: StopReason) -> None:
        """Record the stop reason; the first reason recorded wins."""
        if self.stop_reason is None:
            self.stop_reason = reason

    def cancel(self) -> int:
        """Stop scheduling steps and reject this session's pending calls.

        Idempotent: a second call has no effect and returns 0.
        """
        if self._cancelled:
            return 0
        self._cancelled = True
        self.stop(StopReason.CANCELLED)
        rejected = self.registry.cancel_session(self.session_id)
        logger.info(
            "SESSION_CANCELLED session=%s step=%d rejected_calls=%d",
            self.session_id, self.step_count, rejected,
        )
        return rejected

    def add_message(self, role: str, text: str | None = None) -> SessionMessage:
        message = SessionMessage(id=new_message_id(), role=role)  # type: ignore[arg-type]
        if text:
            message.parts.append(TextPart(text=text))
        self.messages.append(message)
        return message

    def find_tool_part(self, call_id: str) -> ToolInvocationPart | None:
        for message in reversed(self.messages):
            part = message.find_tool_part(call_id)
            if part is not None:
                return part
        return None

    def pending_call_ids(self) -> list[str]:
        return self.registry.pending_ids(self.session_id)
