"""Remote-side stream reconciliation.

The remote executor never receives an explicit "run this" command. It watches
the streamed message list and, on every snapshot, executes each tool
invocation that has become ready and has not yet been dispatched. A call id
enters ``dispatched`` before its execution starts, so a call is executed at
most once however many snapshots repeat it. Outcomes go back through a
``CompletionReporter`` (HTTP in production, in-process in tests).

Usage::

    acc = StreamAccumulator()
    reconciler = StreamReconciler(engine, HttpCompletionReporter(base_url, client))
    for event in events:
        acc.apply(event)
        await reconciler.reconcile(acc.messages)
    reconciler.reset()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol, Sequence

import httpx

from explore_bridge.completion import CallbackPayload, complete_call
from explore_bridge.config import DEFAULT_EXECUTION_TIMEOUT_S, DEFAULT_MAX_RESULT_ROWS
from explore_bridge.engine import QueryEngine, QueryResult
from explore_bridge.errors import BridgeError, RemoteExecutionError
from explore_bridge.events import (
    INPUT_READY,
    ErrorEvent,
    Finish,
    SessionMessage,
    TextChunk,
    TextPart,
    ToolInvocationPart,
    ToolInvocationUpdate,
    state_rank,
)
from explore_bridge.registry import CallRegistry
from explore_bridge.sql_guard import apply_row_limit, validate_sql
from explore_bridge.tools import SQL_QUERY_TOOL_NAME, VISUALIZATION_TOOL_NAME

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshot accumulation
# ---------------------------------------------------------------------------


class StreamAccumulator:
    """Folds stream events into the growing message list.

    Text chunks extend the trailing text part of their message; tool updates
    create or advance the matching tool part and never move it backwards.
    """

    def __init__(self) -> None:
        self.messages: list[SessionMessage] = []
        self.finish: Finish | None = None
        self.error: ErrorEvent | None = None
        self._by_id: dict[str, SessionMessage] = {}

    def _message(self, message_id: str) -> SessionMessage:
        message = self._by_id.get(message_id)
        if message is None:
            message = SessionMessage(id=message_id, role="assistant")
            self._by_id[message_id] = message
            self.messages.append(message)
        return message

    def apply(self, event: Any) -> None:
        if isinstance(event, TextChunk):
            message = self._message(event.message_id)
            last = message.parts[-1] if message.parts else None
            if isinstance(last, TextPart):
                last.text += event.text
            else:
                message.parts.append(TextPart(text=event.text))
        elif isinstance(event, ToolInvocationUpdate):
            message = self._message(event.message_id)
            part = message.find_tool_part(event.call_id)
            if part is None:
                message.parts.append(ToolInvocationPart(
                    call_id=event.call_id,
                    tool_name=event.tool_name,
                    state=event.state,
                    input=event.input,
                    output=event.output,
                    error_text=event.error_text,
                ))
            elif state_rank(event.state) >= state_rank(part.state):
                part.state = event.state
                if event.input is not None:
                    part.input = event.input
                part.output = event.output
                part.error_text = event.error_text
        elif isinstance(event, Finish):
            self.finish = event
        elif isinstance(event, ErrorEvent):
            self.error = event

    @property
    def text(self) -> str:
        return "".join(m.text() for m in self.messages)


# ---------------------------------------------------------------------------
# Completion reporting
# ---------------------------------------------------------------------------


class CompletionReporter(Protocol):
    async def report(
        self, call_id: str, *, success: bool, result: Any = None, error: str | None = None,
    ) -> bool: ...


class RegistryCompletionReporter:
    """Reports straight into a registry living in the same process."""

    def __init__(self, registry: CallRegistry) -> None:
        self.registry = registry

    async def report(
        self, call_id: str, *, success: bool, result: Any = None, error: str | None = None,
    ) -> bool:
        payload = CallbackPayload(call_id=call_id, success=success, result=result, error=error)
        return complete_call(self.registry, payload).accepted


class HttpCompletionReporter:
    """POSTs outcomes to the orchestrator's ``/tool-callback`` endpoint.

    A 404 means the call already settled (typically timed out); it is logged
    and reported as not accepted. Transport errors propagate.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self.url = base_url.rstrip("/") + "/tool-callback"
        self._client = client

    async def report(
        self, call_id: str, *, success: bool, result: Any = None, error: str | None = None,
    ) -> bool:
        body: dict[str, Any] = {"callId": call_id, "success": success}
        if result is not None:
            body["result"] = result
        if error is not None:
            body["error"] = error

        if self._client is not None:
            response = await self._client.post(self.url, json=body)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=body)

        if response.status_code == 404:
            logger.info("REMOTE_REPORT_LATE call_id=%s: orchestrator no longer waiting", call_id)
            return False
        response.raise_for_status()
        return True


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class StreamReconciler:
    """Executes newly-ready tool invocations exactly once per session.

    Args:
        engine: Local query capability holding the data.
        reporter: Where outcomes go.
        max_rows: Row limit appended to queries lacking one.
        execution_timeout_s: Bound on one local query.
    """

    def __init__(
        self,
        engine: QueryEngine,
        reporter: CompletionReporter,
        *,
        max_rows: int = DEFAULT_MAX_RESULT_ROWS,
        execution_timeout_s: float = DEFAULT_EXECUTION_TIMEOUT_S,
    ) -> None:
        self.engine = engine
        self.reporter = reporter
        self.max_rows = max_rows
        self.execution_timeout_s = execution_timeout_s
        self.dispatched: set[str] = set()
        self.charts: list[dict[str, Any]] = []

    def reset(self) -> None:
        """Forget dispatched ids and charts; call at session end."""
        self.dispatched.clear()
        self.charts.clear()

    async def reconcile(self, snapshot: Sequence[SessionMessage]) -> list[str]:
        """Dispatch every eligible tool invocation in ``snapshot``.

        Returns the call ids dispatched by this pass, in snapshot order.
        """
        eligible: list[ToolInvocationPart] = []
        for message in snapshot:
            for part in message.tool_parts():
                if part.state != INPUT_READY or part.call_id in self.dispatched:
                    continue
                self.dispatched.add(part.call_id)
                eligible.append(part)

        if not eligible:
            return []
        logger.info(
            "REMOTE_DISPATCH %d call(s): %s",
            len(eligible), [f"{p.tool_name}:{p.call_id}" for p in eligible],
        )
        await asyncio.gather(*(self._run(p.call_id, p.tool_name, dict(p.input or {})) for p in eligible))
        return [p.call_id for p in eligible]

    async def _run(self, call_id: str, tool_name: str, args: dict[str, Any]) -> None:
        try:
            result = await self._execute(tool_name, args)
        except BridgeError as exc:
            logger.info("REMOTE_TOOL_FAILED tool=%s call_id=%s: %s", tool_name, call_id, exc)
            await self.reporter.report(call_id, success=False, error=str(exc))
            return
        except Exception as exc:
            logger.exception("REMOTE_TOOL_CRASHED tool=%s call_id=%s", tool_name, call_id)
            await self.reporter.report(call_id, success=False, error=f"{type(exc).__name__}: {exc}")
            return
        await self.reporter.report(call_id, success=True, result=result)

    async def _execute(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        if tool_name == SQL_QUERY_TOOL_NAME:
            return await self._execute_sql_tool(args)
        if tool_name == VISUALIZATION_TOOL_NAME:
            return await self._execute_visualization_tool(args)
        raise RemoteExecutionError(f"Unknown tool: {tool_name}")

    async def _execute_sql_tool(self, args: dict[str, Any]) -> dict[str, Any]:
        query = args.get("query")
        if not query:
            raise RemoteExecutionError("No query provided in tool call")
        result, elapsed_ms = await self._query(str(query))
        return {
            "success": True,
            "data": {
                "columns": result.columns,
                "rows": result.rows,
                "rowCount": result.row_count,
                "executionTimeMs": elapsed_ms,
            },
        }

    async def _execute_visualization_tool(self, args: dict[str, Any]) -> dict[str, Any]:
        sql_query = args.get("sqlQuery")
        vega_spec = args.get("vegaLiteSpec")
        title = args.get("title")
        if not sql_query or not isinstance(vega_spec, dict) or not title:
            raise RemoteExecutionError("Missing required fields for visualization")

        result, elapsed_ms = await self._query(str(sql_query))
        chart = {**vega_spec, "data": {"values": result.records()}, "title": title}
        self.charts.append({
            "title": title,
            "chartType": args.get("chartType"),
            "spec": chart,
            "reason": args.get("reason") or "",
        })
        return {
            "success": True,
            "chartGenerated": True,
            "dataPoints": result.row_count,
            "executionTimeMs": elapsed_ms,
        }

    async def _query(self, sql: str) -> tuple[QueryResult, int]:
        """Guard, clamp, and run ``sql`` in a worker thread under the execution timeout."""
        statement = apply_row_limit(validate_sql(sql), self.max_rows)
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.engine.execute, statement),
                timeout=self.execution_timeout_s,
            )
        except asyncio.TimeoutError:
            self.engine.interrupt()
            raise RemoteExecutionError(
                f"Query timed out after {self.execution_timeout_s:g}s"
            ) from None
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        logger.debug("REMOTE_QUERY rows=%d ms=%d sql=%s", result.row_count, elapsed_ms, statement)
        return result, elapsed_ms
