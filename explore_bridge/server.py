"""HTTP surface of the orchestrator.

    POST /explore        start a session; the response is an SSE stream of events
    POST /tool-callback  remote executor reports a tool call's outcome
    GET  /health         liveness plus the number of pending calls

Each SSE frame is ``event: <type>`` followed by the event's JSON on ``data:``
lines. The first frame (``start``) carries the session id. Closing the stream
cancels the session and rejects its pending calls.

Run with ``python -m explore_bridge serve`` or any ASGI server::

    uvicorn --factory explore_bridge.server:create_app
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from explore_bridge.agent_loop import build_exploration_messages, run_exploration
from explore_bridge.completion import CallbackPayload, complete_call
from explore_bridge.config import BridgeConfig
from explore_bridge.errors import ModelBackendError
from explore_bridge.events import ErrorEvent
from explore_bridge.model import LiteLLMStepModel, StepModel
from explore_bridge.registry import CallRegistry, get_registry
from explore_bridge.session import ExplorationSession
from explore_bridge.tools import DEFAULT_TOOLS, RemoteTool

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ColumnInfo(BaseModel):
    name: str
    type: str


class SampleData(BaseModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)


class ExploreRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question: str = Field(min_length=1)
    dataset_schema: list[ColumnInfo] = Field(
        validation_alias=AliasChoices("schema", "datasetSchema"),
    )
    sample: SampleData = Field(
        default_factory=SampleData,
        validation_alias=AliasChoices("sample", "sampleRows"),
    )
    row_count: int | None = Field(default=None, ge=0, alias="rowCount")
    data_description: str | None = Field(default=None, alias="dataDescription")
    max_steps: int | None = Field(default=None, ge=0, alias="maxSteps")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sse_frame(event: str, data: dict[str, Any]) -> str:
    payload = json.dumps(data, ensure_ascii=False, default=str)
    lines = [f"event: {event}"]
    for line in payload.splitlines():
        lines.append(f"data: {line}")
    lines.append("")
    return "\n".join(lines) + "\n"


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def _invalid_payload(details: list[dict[str, Any]]) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid payload", "details": details})


class _BadBody(Exception):
    pass


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise _BadBody(str(exc)) from exc


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    config: BridgeConfig | None = None,
    *,
    model: StepModel | None = None,
    registry: CallRegistry | None = None,
    tools: Iterable[RemoteTool] | None = None,
) -> FastAPI:
    """Build the orchestrator app.

    Args:
        config: Defaults to ``BridgeConfig.from_env()``.
        model: Defaults to ``LiteLLMStepModel(config.model)``.
        registry: Defaults to the process-wide registry.
        tools: Defaults to SQL query + visualization.
    """
    cfg = config or BridgeConfig.from_env()
    step_model: StepModel = model or LiteLLMStepModel(cfg.model)
    call_registry = registry if registry is not None else get_registry()
    tool_list = list(tools) if tools is not None else list(DEFAULT_TOOLS)

    app = FastAPI(title="explore_bridge")
    app.state.config = cfg
    app.state.registry = call_registry

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "pendingCalls": len(call_registry), "model": cfg.model}

    @app.post("/tool-callback")
    async def tool_callback(request: Request) -> Any:
        try:
            body = await _read_json(request)
        except _BadBody as exc:
            return _invalid_payload([{"loc": [], "msg": str(exc), "type": "json_invalid"}])
        try:
            payload = CallbackPayload.model_validate(body)
        except ValidationError as exc:
            logger.info("BRIDGE_CALLBACK_INVALID %s", exc.error_count())
            return _invalid_payload(_validation_details(exc))

        outcome = complete_call(call_registry, payload)
        if not outcome.accepted:
            return JSONResponse(status_code=404, content=outcome.to_response())
        return outcome.to_response()

    @app.post("/explore")
    async def explore(request: Request) -> Any:
        try:
            body = await _read_json(request)
        except _BadBody as exc:
            return _invalid_payload([{"loc": [], "msg": str(exc), "type": "json_invalid"}])
        try:
            req = ExploreRequest.model_validate(body)
        except ValidationError as exc:
            return _invalid_payload(_validation_details(exc))

        max_steps = cfg.clamp_max_steps(req.max_steps)
        session = ExplorationSession(registry=call_registry)
        session.model_messages = build_exploration_messages(
            question=req.question,
            schema=[c.model_dump() for c in req.dataset_schema],
            sample=req.sample.model_dump(),
            row_count=req.row_count,
            data_description=req.data_description,
            table_name=cfg.table_name,
            tools=tool_list,
        )
        session.add_message("user", req.question)
        logger.info(
            "EXPLORE_REQUEST session=%s max_steps=%d question=%.120s",
            session.session_id, max_steps, req.question,
        )
        return StreamingResponse(
            _stream_session(session, step_model, tool_list, cfg, max_steps),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app


async def _stream_session(
    session: ExplorationSession,
    model: StepModel,
    tools: list[RemoteTool],
    cfg: BridgeConfig,
    max_steps: int,
):
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def emit(event: Any) -> None:
        await queue.put(_sse_frame(event.type, event.to_wire()))

    async def drive() -> None:
        try:
            await run_exploration(session, model, tools, max_steps=max_steps, config=cfg, emit=emit)
        except ModelBackendError as exc:
            logger.error("EXPLORE_MODEL_ERROR session=%s kind=%s: %s", session.session_id, exc.kind, exc)
            await emit(ErrorEvent(error=str(exc), kind=exc.kind))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("EXPLORE_FAILED session=%s", session.session_id)
            await emit(ErrorEvent(error=f"{type(exc).__name__}: {exc}", kind="internal"))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(drive())
    try:
        yield _sse_frame("start", {"sessionId": session.session_id, "maxSteps": max_steps})
        while True:
            try:
                frame = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if frame is None:
                break
            yield frame
    finally:
        if not task.done():
            logger.info("EXPLORE_DISCONNECT session=%s step=%d", session.session_id, session.step_count)
            session.cancel()
            task.cancel()
