"""Outgoing stream events and the message records they build.

The step loop emits a flat sequence of events over the ``/explore`` stream.
Folded in order, they describe an append-only list of messages whose parts are
either text or tool invocations; a tool invocation part moves through
``input-pending`` -> ``input-ready`` -> ``output-available`` / ``output-error``.
Wire keys are camelCase.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

INPUT_PENDING = "input-pending"
INPUT_READY = "input-ready"
OUTPUT_AVAILABLE = "output-available"
OUTPUT_ERROR = "output-error"

ToolState = Literal["input-pending", "input-ready", "output-available", "output-error"]

_STATE_ORDER: dict[str, int] = {
    INPUT_PENDING: 0,
    INPUT_READY: 1,
    OUTPUT_AVAILABLE: 2,
    OUTPUT_ERROR: 2,
}


def state_rank(state: str) -> int:
    """Progress rank of a tool state; updates never move a part backwards."""
    return _STATE_ORDER.get(state, -1)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Message records
# ---------------------------------------------------------------------------


class TextPart(_WireModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolInvocationPart(_WireModel):
    """A tool-invocation request plus its eventual outcome."""

    type: Literal["tool-invocation"] = "tool-invocation"
    call_id: str = Field(alias="callId")
    tool_name: str = Field(alias="toolName")
    state: ToolState = INPUT_PENDING
    input: dict[str, Any] | None = None
    output: Any = None
    error_text: str | None = Field(default=None, alias="errorText")


MessagePart = Annotated[Union[TextPart, ToolInvocationPart], Field(discriminator="type")]


class SessionMessage(_WireModel):
    id: str
    role: Literal["user", "assistant"]
    parts: list[MessagePart] = Field(default_factory=list)

    def tool_parts(self) -> list[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    def find_tool_part(self, call_id: str) -> ToolInvocationPart | None:
        for part in self.parts:
            if isinstance(part, ToolInvocationPart) and part.call_id == call_id:
                return part
        return None

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class TextChunk(_WireModel):
    type: Literal["text-chunk"] = "text-chunk"
    message_id: str = Field(alias="messageId")
    text: str


class ToolInvocationUpdate(_WireModel):
    type: Literal["tool-invocation-update"] = "tool-invocation-update"
    message_id: str = Field(alias="messageId")
    call_id: str = Field(alias="callId")
    tool_name: str = Field(alias="toolName")
    state: ToolState
    input: dict[str, Any] | None = None
    output: Any = None
    error_text: str | None = Field(default=None, alias="errorText")

    @classmethod
    def from_part(cls, message_id: str, part: ToolInvocationPart) -> "ToolInvocationUpdate":
        return cls(
            message_id=message_id,
            call_id=part.call_id,
            tool_name=part.tool_name,
            state=part.state,
            input=part.input,
            output=part.output,
            error_text=part.error_text,
        )


class StepFinish(_WireModel):
    type: Literal["step-finish"] = "step-finish"
    step: int
    tool_calls: int = Field(alias="toolCalls")


class Finish(_WireModel):
    type: Literal["finish"] = "finish"
    stop_reason: str = Field(alias="stopReason")
    steps: int
    text: str = ""


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    error: str
    kind: str = "unknown"


StreamEvent = Annotated[
    Union[TextChunk, ToolInvocationUpdate, StepFinish, Finish, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(StreamEvent)


def parse_event(data: dict[str, Any]) -> Any:
    """Parse one wire event (dict) into its model.

    Raises:
        pydantic.ValidationError: unknown ``type`` or malformed fields.
    """
    return _event_adapter.validate_python(data)
