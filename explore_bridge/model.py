"""Model backend for the step loop.

The loop treats the language model as an opaque step generator: given the chat
context and the tool schemas, one turn yields optional text plus zero or more
tool calls (OpenAI format). ``LiteLLMStepModel`` streams the turn through
litellm so text chunks and tool-call starts reach the outgoing stream while the
model is still writing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import litellm

from explore_bridge.errors import wrap_model_error

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], Awaitable[None]]
ToolCallStartCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class ModelTurn:
    """One model turn: text and the tool calls it requested."""

    content: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    finish_reason: str = ""
    model: str = ""


class StepModel(Protocol):
    async def run_turn(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        on_text: TextCallback | None = None,
        on_tool_call_start: ToolCallStartCallback | None = None,
    ) -> ModelTurn: ...


def _extract_tool_calls(message: Any) -> list[dict[str, Any]]:
    """Extract tool calls from a response message into plain dicts."""
    if not getattr(message, "tool_calls", None):
        return []
    result: list[dict[str, Any]] = []
    for tc in message.tool_calls:
        result.append({
            "id": tc.id or f"call_{uuid.uuid4().hex[:24]}",
            "type": getattr(tc, "type", None) or "function",
            "function": {
                "name": tc.function.name,
                "arguments": tc.function.arguments or "{}",
            },
        })
    return result


def _extract_usage(response: Any) -> dict[str, Any]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


def _compute_cost(response: Any) -> float:
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as exc:
        logger.debug("completion_cost unavailable (%s); recording 0.0", exc)
        return 0.0


class LiteLLMStepModel:
    """StepModel backed by ``litellm.acompletion(stream=True)``.

    Args:
        model: Any litellm model string.
        timeout: Per-turn request timeout in seconds.
        **completion_kwargs: Passed through to litellm (temperature, api_base, ...).
    """

    def __init__(self, model: str, *, timeout: float = 60, **completion_kwargs: Any) -> None:
        self.model = model
        self.timeout = timeout
        self.completion_kwargs = completion_kwargs

    async def run_turn(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        on_text: TextCallback | None = None,
        on_tool_call_start: ToolCallStartCallback | None = None,
    ) -> ModelTurn:
        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "timeout": self.timeout,
            **self.completion_kwargs,
        }
        if tools:
            call_kwargs["tools"] = tools

        chunks: list[Any] = []
        text_parts: list[str] = []
        announced: set[int] = set()
        try:
            response = await litellm.acompletion(**call_kwargs)
            async for chunk in response:
                chunks.append(chunk)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    text_parts.append(delta.content)
                    if on_text is not None:
                        await on_text(delta.content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tc, "index", 0) or 0
                    fn = getattr(tc, "function", None)
                    name = getattr(fn, "name", None)
                    if index in announced or not tc.id or not name:
                        continue
                    announced.add(index)
                    if on_tool_call_start is not None:
                        await on_tool_call_start(tc.id, name)
        except Exception as exc:
            raise wrap_model_error(exc) from exc

        return self._finalize(chunks, messages, "".join(text_parts))

    def _finalize(self, chunks: list[Any], messages: list[dict[str, Any]], content: str) -> ModelTurn:
        turn = ModelTurn(content=content, model=self.model, finish_reason="stop")
        if not chunks:
            return turn
        try:
            complete = litellm.stream_chunk_builder(chunks, messages=messages)
        except Exception as exc:
            logger.warning("stream_chunk_builder failed for %s: %s", self.model, exc)
            return turn
        if not complete or not complete.choices:
            return turn
        choice = complete.choices[0]
        turn.tool_calls = _extract_tool_calls(choice.message)
        turn.finish_reason = choice.finish_reason or "stop"
        turn.usage = _extract_usage(complete)
        turn.cost = _compute_cost(complete)
        return turn
