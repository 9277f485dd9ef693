"""Remote tool adapters.

A ``RemoteTool`` presents a tool's declared contract (name, description,
pydantic input model) to the step loop, while the actual execution happens on
the remote executor that holds the data. On invocation the adapter:

    1. validates the arguments (schema + read-only SQL guard) and fails fast
       with a ``ToolFailure`` without touching the registry;
    2. registers the call in the CallRegistry and awaits the handle;
    3. maps the resolved / rejected / expired outcome onto ``ToolSuccess`` or
       ``ToolFailure`` (with a corrective hint) so the model can self-correct.

Only ``CallCancelledError`` (session cancelled) escapes ``invoke``.

Usage::

    from explore_bridge.tools import SQL_QUERY_TOOL, build_tool_map

    tool_map = build_tool_map([SQL_QUERY_TOOL])
    result = await tool_map["executeSQLQuery"].invoke(
        "call_1", '{"query": "SELECT 1", "reason": "smoke"}', registry=registry,
    )
"""

from __future__ import annotations

import json as _json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from explore_bridge.errors import (
    CallCancelledError,
    CallTimeoutError,
    DuplicateCallError,
    InvalidInputError,
    RemoteExecutionError,
    hint_for_error,
)
from explore_bridge.registry import CallRegistry
from explore_bridge.sql_guard import validate_sql

logger = logging.getLogger(__name__)

SQL_QUERY_TOOL_NAME = "executeSQLQuery"
VISUALIZATION_TOOL_NAME = "createVisualization"


# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------


class ToolSuccess(BaseModel):
    """Successful tool outcome with the tool's payload."""

    success: Literal[True] = True
    data: Any = None


class ToolFailure(BaseModel):
    """Failed tool outcome. ``hint`` tells the model how to correct its next call."""

    success: Literal[False] = False
    error: str
    hint: str | None = None
    error_type: str = "RemoteExecutionError"


ToolResult = Union[ToolSuccess, ToolFailure]


def decode_tool_result(value: Any, *, default_hint: str | None = None) -> ToolResult:
    """Decode a remote payload into ToolSuccess / ToolFailure.

    Payloads carrying ``"success": false`` become failures; a payload whose only
    field besides ``success`` is ``data`` is unwrapped.
    """
    if not isinstance(value, dict):
        return ToolSuccess(data=value)
    if value.get("success") is False:
        error = str(value.get("error") or "Unknown error")
        return ToolFailure(
            error=error,
            hint=value.get("hint") or hint_for_error(error, default_hint),
        )
    payload = {k: v for k, v in value.items() if k != "success"}
    if set(payload) == {"data"}:
        return ToolSuccess(data=payload["data"])
    return ToolSuccess(data=payload)


def tool_result_content(result: ToolResult, max_length: int) -> str:
    """Serialize a tool result for the model's context, truncating long payloads."""
    text = result.model_dump_json(exclude_none=True)
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


# ---------------------------------------------------------------------------
# Input contracts
# ---------------------------------------------------------------------------


class SQLQueryInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = Field(
        min_length=1,
        description=(
            "SQL query to execute. Must be a SELECT query against the dataset table. "
            "Example: SELECT * FROM t_parsed LIMIT 10"
        ),
    )
    reason: str = Field(
        default="",
        description="Brief explanation of why this query is needed for the analysis.",
    )


class VegaLiteSpec(BaseModel):
    """Vega-Lite chart spec; anything beyond ``mark`` is passed through untouched."""

    model_config = ConfigDict(extra="allow")

    mark: Union[str, dict[str, Any]]
    encoding: dict[str, Any] | None = None
    width: float | None = None
    height: float | None = None
    title: str | None = None


class VisualizationInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    chart_type: Literal["bar", "line", "scatter", "area", "pie"] = Field(
        alias="chartType", description="Type of chart to create",
    )
    sql_query: str = Field(
        alias="sqlQuery",
        min_length=1,
        description="SQL query returning the columns referenced by the chart encoding.",
    )
    vega_lite_spec: VegaLiteSpec = Field(
        alias="vegaLiteSpec",
        description="Vega-Lite spec for the chart. Omit 'data'; it is injected from the SQL result.",
    )
    title: str = Field(min_length=1, description="Clear, descriptive title for the chart")
    reason: str = Field(
        default="", description="Brief explanation of what insight this visualization reveals",
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<input>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "Validation error: " + "; ".join(parts)


@dataclass(frozen=True)
class RemoteTool:
    """Declared contract of a tool whose execution is delegated to the remote side."""

    name: str
    description: str
    input_model: type[BaseModel]
    sql_fields: tuple[str, ...] = ()
    failure_hint: str | None = None

    def to_openai_tool(self) -> dict[str, Any]:
        """OpenAI function-calling schema for this tool."""
        parameters = self.input_model.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        parameters.setdefault("type", "object")
        parameters.setdefault("properties", {})
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def validate_input(self, arguments: dict[str, Any] | str | None) -> dict[str, Any]:
        """Validate raw tool arguments; returns the wire payload (camelCase keys).

        Raises:
            InvalidInputError: unparseable JSON, schema violation, or SQL the
                read-only guard rejects.
        """
        if isinstance(arguments, str):
            try:
                arguments = _json.loads(arguments) if arguments.strip() else {}
            except _json.JSONDecodeError as exc:
                raise InvalidInputError(f"Invalid JSON arguments: {exc}", original=exc) from exc
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidInputError(
                f"Arguments must be a JSON object, got {type(arguments).__name__}"
            )
        try:
            parsed = self.input_model.model_validate(arguments)
        except ValidationError as exc:
            raise InvalidInputError(_format_validation_error(exc), original=exc) from exc

        payload = parsed.model_dump(by_alias=True, mode="json", exclude_none=True)
        for field_name in self.sql_fields:
            validate_sql(str(payload.get(field_name, "")))
        return payload

    async def invoke(
        self,
        call_id: str,
        arguments: dict[str, Any] | str | None,
        *,
        registry: CallRegistry,
        session_id: str | None = None,
        timeout: float | None = None,
        on_registered: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
    ) -> ToolResult:
        """Validate, register, await the remote outcome, and map it to a ToolResult.

        ``on_registered`` receives the validated payload once the call is in
        the registry, before the adapter suspends; the step loop uses it to
        publish the call to the remote side so a fast completion always finds
        its entry.

        Raises:
            CallCancelledError: the owning session was cancelled.
        """
        try:
            payload = self.validate_input(arguments)
        except InvalidInputError as exc:
            logger.info("TOOL_INPUT_REJECTED tool=%s call_id=%s: %s", self.name, call_id, exc)
            return ToolFailure(
                error=str(exc),
                hint=hint_for_error(str(exc), "Fix the tool arguments to match the tool's input schema."),
                error_type=type(exc).__name__,
            )

        reason = payload.get("reason")
        if reason:
            logger.info("TOOL_CALL tool=%s call_id=%s reason=%s", self.name, call_id, reason)

        t0 = time.monotonic()
        try:
            handle = registry.register(
                call_id, self.name, payload, session_id=session_id, timeout=timeout,
            )
        except DuplicateCallError as exc:
            logger.error("TOOL_DUPLICATE_CALL tool=%s call_id=%s", self.name, call_id)
            return ToolFailure(error=str(exc), error_type=type(exc).__name__)

        if on_registered is not None:
            try:
                await on_registered(payload)
            except BaseException:
                handle.cancel()
                raise

        try:
            value = await handle
        except CallCancelledError:
            raise
        except CallTimeoutError as exc:
            return ToolFailure(
                error=str(exc),
                hint=(
                    "The remote executor did not answer in time. "
                    "It may not have executed the query; retry once with a simpler query."
                ),
                error_type=type(exc).__name__,
            )
        except RemoteExecutionError as exc:
            logger.info(
                "TOOL_REMOTE_ERROR tool=%s call_id=%s latency=%.3fs: %s",
                self.name, call_id, time.monotonic() - t0, exc,
            )
            return ToolFailure(
                error=str(exc),
                hint=hint_for_error(str(exc), self.failure_hint),
                error_type=type(exc).__name__,
            )

        logger.info(
            "TOOL_RESULT tool=%s call_id=%s latency=%.3fs", self.name, call_id, time.monotonic() - t0,
        )
        return decode_tool_result(value, default_hint=self.failure_hint)


def build_tool_map(tools: list[RemoteTool]) -> dict[str, RemoteTool]:
    """Index tools by name.

    Raises:
        ValueError: two tools share a name.
    """
    tool_map: dict[str, RemoteTool] = {}
    for tool in tools:
        if tool.name in tool_map:
            raise ValueError(f"Duplicate tool name {tool.name!r}")
        tool_map[tool.name] = tool
    return tool_map


# ---------------------------------------------------------------------------
# Bundled tools
# ---------------------------------------------------------------------------


SQL_QUERY_TOOL = RemoteTool(
    name=SQL_QUERY_TOOL_NAME,
    description=(
        "Execute a read-only SQL query against the dataset table.\n\n"
        "Use this tool to explore structure and contents, calculate aggregations and "
        "statistics, filter and sort, and group to find patterns. Only SELECT, WITH, and "
        "PRAGMA queries are allowed. Results are limited to a fixed number of rows."
    ),
    input_model=SQLQueryInput,
    sql_fields=("query",),
    failure_hint="SQL execution failed. Check the query against the schema and try again.",
)

VISUALIZATION_TOOL = RemoteTool(
    name=VISUALIZATION_TOOL_NAME,
    description=(
        "Create a chart to illustrate a pattern, trend, or insight. Supported chart types: "
        "bar, line, scatter, area, pie. The SQL query runs where the data lives and its rows "
        "are injected into the Vega-Lite spec."
    ),
    input_model=VisualizationInput,
    sql_fields=("sqlQuery",),
    failure_hint="Chart generation failed. Check the SQL query and the Vega-Lite specification.",
)

DEFAULT_TOOLS: tuple[RemoteTool, ...] = (SQL_QUERY_TOOL, VISUALIZATION_TOOL)
