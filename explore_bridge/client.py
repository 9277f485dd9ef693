"""Remote executor client.

``RemoteExplorer`` is the side that holds the data. It opens ``/explore`` on
the orchestrator, folds the SSE stream into a message snapshot, lets the
``StreamReconciler`` execute ready tool calls against the local engine, and
posts outcomes to ``/tool-callback``.

Usage::

    engine = SQLiteQueryEngine.from_csv("sales.csv")
    async with httpx.AsyncClient(timeout=None) as http:
        explorer = RemoteExplorer(engine, base_url="http://127.0.0.1:8000", client=http)
        summary = await explorer.explore("Which region grew fastest?")
    print(summary.text, summary.stop_reason)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from explore_bridge.config import BridgeConfig
from explore_bridge.engine import SQLiteQueryEngine
from explore_bridge.errors import BridgeError
from explore_bridge.events import INPUT_READY, SessionMessage, ToolInvocationUpdate, parse_event
from explore_bridge.reconciler import HttpCompletionReporter, StreamAccumulator, StreamReconciler

logger = logging.getLogger(__name__)


@dataclass
class ExplorationSummary:
    session_id: str = ""
    text: str = ""
    stop_reason: str | None = None
    steps: int = 0
    charts: list[dict[str, Any]] = field(default_factory=list)
    messages: list[SessionMessage] = field(default_factory=list)
    error: str | None = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Yield ``(event, data)`` per SSE frame; comment lines are skipped."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        key, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if key == "event":
            event = value
        elif key == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class RemoteExplorer:
    """Drives one exploration at a time from the data-holding side."""

    def __init__(
        self,
        engine: SQLiteQueryEngine,
        *,
        base_url: str | None = None,
        config: BridgeConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self.engine = engine
        self.base_url = (base_url or self.config.server_url).rstrip("/")
        self._client = client

    def build_request(
        self,
        question: str,
        *,
        data_description: str | None = None,
        max_steps: int | None = None,
        sample_size: int = 5,
    ) -> dict[str, Any]:
        sample = self.engine.sample(sample_size)
        body: dict[str, Any] = {
            "question": question,
            "schema": self.engine.schema(),
            "sample": {"columns": sample.columns, "rows": sample.rows},
            "rowCount": self.engine.row_count(),
        }
        if data_description:
            body["dataDescription"] = data_description
        if max_steps is not None:
            body["maxSteps"] = max_steps
        return body

    async def explore(
        self,
        question: str,
        *,
        data_description: str | None = None,
        max_steps: int | None = None,
    ) -> ExplorationSummary:
        """Run one exploration to completion.

        Outcomes the orchestrator could not be told about (callback POST
        failures) end up in ``summary.error``.

        Raises:
            BridgeError: the orchestrator refused the request.
            httpx.HTTPError: transport failure.
        """
        body = self.build_request(question, data_description=data_description, max_steps=max_steps)
        if self._client is not None:
            return await self._explore(self._client, body)
        async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None)) as client:
            return await self._explore(client, body)

    async def _explore(self, client: httpx.AsyncClient, body: dict[str, Any]) -> ExplorationSummary:
        reconciler = StreamReconciler(
            self.engine,
            HttpCompletionReporter(self.base_url, client),
            max_rows=self.config.max_result_rows,
            execution_timeout_s=self.config.execution_timeout_s,
        )
        acc = StreamAccumulator()
        summary = ExplorationSummary(messages=acc.messages)
        tasks: list[asyncio.Task[list[str]]] = []
        report_errors: list[Exception] = []

        try:
            async with client.stream("POST", f"{self.base_url}/explore", json=body) as response:
                if response.status_code != 200:
                    detail = (await response.aread()).decode("utf-8", "replace")
                    raise BridgeError(f"/explore returned {response.status_code}: {detail}")
                async for event_name, data in iter_sse(response.aiter_lines()):
                    payload = json.loads(data)
                    if event_name == "start":
                        summary.session_id = payload.get("sessionId", "")
                        logger.info("REMOTE_SESSION session=%s", summary.session_id)
                        continue
                    try:
                        event = parse_event(payload)
                    except ValidationError:
                        logger.warning("Ignoring unrecognized stream event %r", event_name)
                        continue
                    acc.apply(event)
                    if isinstance(event, ToolInvocationUpdate) and event.state == INPUT_READY:
                        tasks.append(asyncio.create_task(reconciler.reconcile(acc.messages)))
            for outcome in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(outcome, Exception):
                    logger.error("REMOTE_REPORT_FAILED %s: %s", type(outcome).__name__, outcome)
                    report_errors.append(outcome)
            summary.charts = list(reconciler.charts)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            reconciler.reset()

        if acc.finish is not None:
            summary.stop_reason = acc.finish.stop_reason
            summary.steps = acc.finish.steps
            summary.text = acc.finish.text or acc.text
        else:
            summary.text = acc.text
        if acc.error is not None:
            summary.error = acc.error.error
        elif report_errors:
            first = report_errors[0]
            summary.error = (
                f"Failed to report {len(report_errors)} tool outcome(s): {type(first).__name__}: {first}"
            )
        return summary
