"""Bounded multi-step exploration loop.

Each step is one model turn. Every tool call in the turn is dispatched to its
remote tool adapter, all of them concurrently, and the loop suspends until all
of them have settled. Only then does the model see the results and the next
step begin.

Stop conditions, checked before the first step and after every step, in order:
    1. step budget reached (``max_steps``; 0 halts before any step)
    2. the turn requested no tool calls (natural completion)
    3. the session was cancelled (client disconnect)

Tool failures (bad input, timeout, remote error) never end the loop; they are
fed back to the model as structured tool results so it can retry. Cancellation
rejects the session's pending calls immediately instead of letting them time
out. Model backend failures propagate to the caller.

Usage::

    session = ExplorationSession(registry=get_registry())
    session.model_messages = build_exploration_messages(question="...", schema=cols, ...)
    result = await run_exploration(session, LiteLLMStepModel("gpt-4o"), DEFAULT_TOOLS, max_steps=10)
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from explore_bridge.config import BridgeConfig
from explore_bridge.errors import CallCancelledError
from explore_bridge.events import (
    INPUT_PENDING,
    INPUT_READY,
    OUTPUT_AVAILABLE,
    OUTPUT_ERROR,
    Finish,
    SessionMessage,
    StepFinish,
    TextChunk,
    TextPart,
    ToolInvocationPart,
    ToolInvocationUpdate,
)
from explore_bridge.model import ModelTurn, StepModel
from explore_bridge.prompts import render_prompt
from explore_bridge.session import ExplorationSession, StopReason
from explore_bridge.tools import (
    SQL_QUERY_TOOL_NAME,
    VISUALIZATION_TOOL_NAME,
    RemoteTool,
    ToolFailure,
    ToolResult,
    ToolSuccess,
    build_tool_map,
    tool_result_content,
)

logger = logging.getLogger(__name__)

EmitFn = Callable[[Any], Awaitable[None]]


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ToolCallRecord:
    """Record of a single tool call during the loop."""

    call_id: str
    tool: str
    step: int
    arguments: dict[str, Any] | None = None
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    hint: str | None = None
    latency_s: float = 0.0


@dataclass
class ExplorationResult:
    """Accumulated outcome of one exploration session."""

    session_id: str
    content: str = ""
    stop_reason: StopReason | None = None
    steps: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def build_exploration_messages(
    *,
    question: str,
    schema: list[dict[str, Any]],
    sample: dict[str, Any],
    row_count: int | None = None,
    data_description: str | None = None,
    table_name: str = "t_parsed",
    tools: Iterable[RemoteTool] = (),
) -> list[dict[str, str]]:
    """Render the system + user messages that open an exploration."""
    tool_names = {t.name for t in tools}
    sample_rows = list(sample.get("rows") or [])
    return render_prompt(
        "explore.yaml",
        question=question,
        schema=schema,
        row_count=row_count if row_count is not None else len(sample_rows),
        data_description=data_description,
        sample_rows=sample_rows,
        sample_json=_json.dumps(
            {"columns": sample.get("columns") or [], "rows": sample_rows},
            indent=2,
            default=str,
        ),
        table_name=table_name,
        sql_tool=SQL_QUERY_TOOL_NAME,
        chart_tool=VISUALIZATION_TOOL_NAME if VISUALIZATION_TOOL_NAME in tool_names else None,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extract_usage(usage: dict[str, Any]) -> tuple[int, int]:
    """(input_tokens, output_tokens) from OpenAI or Anthropic usage conventions."""
    inp = usage.get("input_tokens") or usage.get("prompt_tokens") or 0
    out = usage.get("output_tokens") or usage.get("completion_tokens") or 0
    return int(inp), int(out)


def _parse_arguments(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        parsed = _json.loads(raw) if raw.strip() else {}
    except _json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def _noop_emit(event: Any) -> None:
    return None


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


async def run_exploration(
    session: ExplorationSession,
    model: StepModel,
    tools: Iterable[RemoteTool],
    *,
    max_steps: int,
    config: BridgeConfig | None = None,
    emit: EmitFn | None = None,
) -> ExplorationResult:
    """Drive the model through at most ``max_steps`` steps.

    Args:
        session: Session whose ``model_messages`` already hold the opening prompt.
        model: Step generator (``LiteLLMStepModel`` in production).
        tools: Remote tool adapters offered to the model.
        max_steps: Step budget; 0 stops before the first step.
        config: Timeouts and result limits (``BridgeConfig()`` when omitted).
        emit: Async sink for stream events.

    Raises:
        ModelBackendError: the model backend failed.
        asyncio.CancelledError: the surrounding task was cancelled; the
            session is cancelled (pending calls rejected) before re-raising.
    """
    cfg = config or BridgeConfig()
    sink = emit or _noop_emit
    tool_map = build_tool_map(list(tools))
    openai_tools = [t.to_openai_tool() for t in tool_map.values()]
    result = ExplorationResult(session_id=session.session_id)

    logger.info(
        "EXPLORE_START session=%s max_steps=%d tools=%s",
        session.session_id, max_steps, sorted(tool_map),
    )
    try:
        while True:
            if session.cancelled:
                session.stop(StopReason.CANCELLED)
                break
            if session.step_count >= max_steps:
                session.stop(StopReason.MAX_STEPS)
                break

            turn = await _run_step(session, model, tool_map, openai_tools, cfg, sink, result)

            if turn.content.strip():
                result.content = turn.content
            if session.cancelled:
                session.stop(StopReason.CANCELLED)
                break
            if session.step_count >= max_steps:
                session.stop(StopReason.MAX_STEPS)
                if turn.tool_calls:
                    logger.warning(
                        "EXPLORE_MAX_STEPS session=%s stopped after %d steps with tool calls outstanding",
                        session.session_id, session.step_count,
                    )
                break
            if not turn.tool_calls:
                session.stop(StopReason.NO_TOOL_CALLS)
                break
    except asyncio.CancelledError:
        session.cancel()
        raise

    result.stop_reason = session.stop_reason
    result.steps = session.step_count
    logger.info(
        "EXPLORE_FINISH session=%s stop_reason=%s steps=%d tool_calls=%d tokens=%d/%d",
        session.session_id,
        result.stop_reason.value if result.stop_reason else None,
        result.steps,
        len(result.tool_calls),
        result.total_input_tokens,
        result.total_output_tokens,
    )
    await sink(Finish(
        stop_reason=result.stop_reason.value if result.stop_reason else "",
        steps=result.steps,
        text=result.content,
    ))
    return result


async def _run_step(
    session: ExplorationSession,
    model: StepModel,
    tool_map: dict[str, RemoteTool],
    openai_tools: list[dict[str, Any]],
    cfg: BridgeConfig,
    emit: EmitFn,
    result: ExplorationResult,
) -> ModelTurn:
    session.step_count += 1
    step = session.step_count
    message = session.add_message("assistant")

    async def on_text(chunk: str) -> None:
        if message.parts and isinstance(message.parts[-1], TextPart):
            message.parts[-1].text += chunk
        else:
            message.parts.append(TextPart(text=chunk))
        await emit(TextChunk(message_id=message.id, text=chunk))

    async def on_tool_call_start(call_id: str, tool_name: str) -> None:
        if message.find_tool_part(call_id) is not None:
            return
        part = ToolInvocationPart(call_id=call_id, tool_name=tool_name, state=INPUT_PENDING)
        message.parts.append(part)
        await emit(ToolInvocationUpdate.from_part(message.id, part))

    turn = await model.run_turn(
        session.model_messages,
        openai_tools,
        on_text=on_text,
        on_tool_call_start=on_tool_call_start,
    )

    if turn.content and not message.text():
        await on_text(turn.content)
    inp, out = _extract_usage(turn.usage or {})
    result.total_input_tokens += inp
    result.total_output_tokens += out
    result.total_cost += turn.cost

    if session.cancelled:
        logger.info(
            "EXPLORE_STEP_ABANDONED session=%s step=%d: cancelled during model turn, %d tool call(s) not dispatched",
            session.session_id, step, len(turn.tool_calls),
        )
        return turn

    if not turn.tool_calls:
        session.model_messages.append({"role": "assistant", "content": turn.content})
        await emit(StepFinish(step=step, tool_calls=0))
        return turn

    session.model_messages.append({
        "role": "assistant",
        "content": turn.content or None,
        "tool_calls": turn.tool_calls,
    })

    dispatches = []
    for tc in turn.tool_calls:
        fn = tc.get("function", {})
        call_id = tc.get("id", "")
        tool_name = fn.get("name", "")
        part = message.find_tool_part(call_id)
        if part is None:
            part = ToolInvocationPart(call_id=call_id, tool_name=tool_name, state=INPUT_PENDING)
            message.parts.append(part)
            await emit(ToolInvocationUpdate.from_part(message.id, part))
        dispatches.append(
            _dispatch_tool_call(session, message, part, fn.get("arguments"), tool_map, cfg, emit, step)
        )

    logger.info(
        "EXPLORE_STEP session=%s step=%d dispatching %d tool call(s): %s",
        session.session_id, step, len(dispatches),
        [tc.get("function", {}).get("name", "") for tc in turn.tool_calls],
    )
    outcomes = await asyncio.gather(*dispatches, return_exceptions=True)

    cancelled = False
    for tc, outcome in zip(turn.tool_calls, outcomes):
        if isinstance(outcome, CallCancelledError):
            cancelled = True
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        record, tool_result = outcome
        result.tool_calls.append(record)
        if record.error:
            result.warnings.append(
                f"TOOL_ERROR step={step} {record.tool}: {record.error_type}: {record.error}"
            )
        session.model_messages.append({
            "role": "tool",
            "tool_call_id": tc.get("id", ""),
            "content": tool_result_content(tool_result, cfg.tool_result_max_length),
        })

    if cancelled:
        session.cancel()
        return turn

    await emit(StepFinish(step=step, tool_calls=len(turn.tool_calls)))
    return turn


async def _dispatch_tool_call(
    session: ExplorationSession,
    message: SessionMessage,
    part: ToolInvocationPart,
    raw_arguments: Any,
    tool_map: dict[str, RemoteTool],
    cfg: BridgeConfig,
    emit: EmitFn,
    step: int,
) -> tuple[ToolCallRecord, ToolResult]:
    record = ToolCallRecord(
        call_id=part.call_id,
        tool=part.tool_name,
        step=step,
        arguments=_parse_arguments(raw_arguments),
    )
    part.input = record.arguments
    t0 = time.monotonic()

    async def on_registered(payload: dict[str, Any]) -> None:
        if session.cancelled:
            # Registered after cancel_session ran; reject it now instead of at its deadline.
            session.registry.cancel_session(session.session_id)
            return
        part.input = payload
        part.state = INPUT_READY
        await emit(ToolInvocationUpdate.from_part(message.id, part))

    tool = tool_map.get(part.tool_name)
    tool_result: ToolResult
    if tool is None:
        tool_result = ToolFailure(
            error=f"Unknown tool: {part.tool_name}",
            hint=f"Available tools: {', '.join(sorted(tool_map))}",
            error_type="InvalidInputError",
        )
    else:
        try:
            tool_result = await tool.invoke(
                part.call_id,
                raw_arguments,
                registry=session.registry,
                session_id=session.session_id,
                timeout=cfg.tool_timeout_s,
                on_registered=on_registered,
            )
        except CallCancelledError as exc:
            part.state = OUTPUT_ERROR
            part.error_text = str(exc)
            await emit(ToolInvocationUpdate.from_part(message.id, part))
            raise

    record.latency_s = round(time.monotonic() - t0, 3)
    if isinstance(tool_result, ToolSuccess):
        record.result = tool_result.data
        part.state = OUTPUT_AVAILABLE
        part.output = tool_result.data
    else:
        record.error = tool_result.error
        record.error_type = tool_result.error_type
        record.hint = tool_result.hint
        part.state = OUTPUT_ERROR
        part.error_text = tool_result.error
        part.output = tool_result.model_dump(exclude_none=True)
    await emit(ToolInvocationUpdate.from_part(message.id, part))
    return record, tool_result
