"""Tests for explore_bridge.tools.

Covers:
- tool schemas exposed to the model (camelCase argument names)
- input validation (schema, JSON, read-only SQL guard)
- invoke(): success, remote failure, timeout, cancellation, duplicate id,
  fail-fast on bad input without registering
- remote payload decoding and result serialization
"""

import asyncio
import json

import pytest

from explore_bridge.errors import CallCancelledError, InvalidInputError, SQLValidationError
from explore_bridge.registry import CallRegistry
from explore_bridge.tools import (
    DEFAULT_TOOLS,
    SQL_QUERY_TOOL,
    VISUALIZATION_TOOL,
    RemoteTool,
    SQLQueryInput,
    ToolFailure,
    ToolSuccess,
    build_tool_map,
    decode_tool_result,
    tool_result_content,
)

VIZ_ARGS = {
    "chartType": "bar",
    "sqlQuery": "SELECT region, SUM(sales) AS total FROM t_parsed GROUP BY region",
    "vegaLiteSpec": {
        "mark": "bar",
        "encoding": {"x": {"field": "region"}, "y": {"field": "total"}},
    },
    "title": "Sales by region",
    "reason": "compare regions",
}


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_sql_tool_schema(self):
        spec = SQL_QUERY_TOOL.to_openai_tool()
        assert spec["type"] == "function"
        fn = spec["function"]
        assert fn["name"] == "executeSQLQuery"
        assert "query" in fn["parameters"]["properties"]
        assert "query" in fn["parameters"]["required"]

    def test_visualization_schema_uses_camel_case(self):
        props = VISUALIZATION_TOOL.to_openai_tool()["function"]["parameters"]["properties"]
        assert {"chartType", "sqlQuery", "vegaLiteSpec", "title", "reason"} <= set(props)

    def test_default_tools(self):
        assert [t.name for t in DEFAULT_TOOLS] == ["executeSQLQuery", "createVisualization"]

    def test_build_tool_map_rejects_duplicates(self):
        with pytest.raises(ValueError, match="Duplicate tool name"):
            build_tool_map([SQL_QUERY_TOOL, SQL_QUERY_TOOL])

    def test_build_tool_map(self):
        tool_map = build_tool_map(list(DEFAULT_TOOLS))
        assert tool_map["createVisualization"] is VISUALIZATION_TOOL


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class TestValidateInput:
    def test_accepts_json_string(self):
        payload = SQL_QUERY_TOOL.validate_input('{"query": "SELECT 1", "reason": "smoke"}')
        assert payload == {"query": "SELECT 1", "reason": "smoke"}

    def test_reason_optional(self):
        assert SQL_QUERY_TOOL.validate_input({"query": "SELECT 1"})["reason"] == ""

    def test_missing_query(self):
        with pytest.raises(InvalidInputError, match="query"):
            SQL_QUERY_TOOL.validate_input({"reason": "x"})

    def test_bad_json(self):
        with pytest.raises(InvalidInputError, match="Invalid JSON"):
            SQL_QUERY_TOOL.validate_input("{not json")

    def test_non_object(self):
        with pytest.raises(InvalidInputError, match="JSON object"):
            SQL_QUERY_TOOL.validate_input("[1, 2]")

    def test_write_sql_rejected(self):
        with pytest.raises(SQLValidationError):
            SQL_QUERY_TOOL.validate_input({"query": "DELETE FROM t_parsed"})

    def test_visualization_payload_keeps_wire_names(self):
        payload = VISUALIZATION_TOOL.validate_input(VIZ_ARGS)
        assert payload["chartType"] == "bar"
        assert payload["sqlQuery"].startswith("SELECT region")
        assert payload["vegaLiteSpec"]["mark"] == "bar"
        assert payload["vegaLiteSpec"]["encoding"]["x"] == {"field": "region"}

    def test_visualization_extra_spec_keys_pass_through(self):
        args = {**VIZ_ARGS, "vegaLiteSpec": {"mark": {"type": "line"}, "config": {"axis": {}}}}
        payload = VISUALIZATION_TOOL.validate_input(args)
        assert payload["vegaLiteSpec"]["config"] == {"axis": {}}

    def test_visualization_bad_chart_type(self):
        with pytest.raises(InvalidInputError, match="chartType"):
            VISUALIZATION_TOOL.validate_input({**VIZ_ARGS, "chartType": "radar"})

    def test_visualization_sql_guarded(self):
        with pytest.raises(SQLValidationError):
            VISUALIZATION_TOOL.validate_input({**VIZ_ARGS, "sqlQuery": "DROP TABLE t_parsed"})


# ---------------------------------------------------------------------------
# invoke()
# ---------------------------------------------------------------------------


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success(self):
        reg = CallRegistry()
        seen = []

        async def on_registered(payload):
            seen.append(payload)
            assert "c1" in reg
            reg.resolve("c1", {"success": True, "data": {"columns": ["n"], "rows": [[1]]}})

        result = await SQL_QUERY_TOOL.invoke(
            "c1", '{"query": "SELECT 1", "reason": "r"}', registry=reg, on_registered=on_registered,
        )
        assert isinstance(result, ToolSuccess)
        assert result.data == {"columns": ["n"], "rows": [[1]]}
        assert seen == [{"query": "SELECT 1", "reason": "r"}]
        assert len(reg) == 0

    @pytest.mark.asyncio
    async def test_remote_failure_gets_hint(self):
        reg = CallRegistry()

        async def on_registered(payload):
            reg.reject("c1", "no such column: revenue")

        result = await SQL_QUERY_TOOL.invoke(
            "c1", {"query": "SELECT revenue FROM t_parsed"}, registry=reg, on_registered=on_registered,
        )
        assert isinstance(result, ToolFailure)
        assert result.error == "no such column: revenue"
        assert result.error_type == "RemoteExecutionError"
        assert "unknown column" in result.hint

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_tool_hint(self):
        reg = CallRegistry()

        async def on_registered(payload):
            reg.reject("c1", "Unknown error")

        result = await SQL_QUERY_TOOL.invoke(
            "c1", {"query": "SELECT 1"}, registry=reg, on_registered=on_registered,
        )
        assert result.hint == SQL_QUERY_TOOL.failure_hint

    @pytest.mark.asyncio
    async def test_success_false_payload_is_failure(self):
        reg = CallRegistry()

        async def on_registered(payload):
            reg.resolve("c1", {"success": False, "error": "Binder Error: bad"})

        result = await SQL_QUERY_TOOL.invoke(
            "c1", {"query": "SELECT 1"}, registry=reg, on_registered=on_registered,
        )
        assert isinstance(result, ToolFailure)
        assert result.error == "Binder Error: bad"

    @pytest.mark.asyncio
    async def test_timeout_is_tool_failure(self):
        reg = CallRegistry()
        result = await SQL_QUERY_TOOL.invoke("c1", {"query": "SELECT 1"}, registry=reg, timeout=0.05)
        assert isinstance(result, ToolFailure)
        assert result.error == "Tool execution timeout after 50ms"
        assert result.error_type == "CallTimeoutError"
        assert result.hint
        assert "c1" not in reg

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        reg = CallRegistry()

        async def on_registered(payload):
            reg.cancel_session("s1")

        with pytest.raises(CallCancelledError):
            await SQL_QUERY_TOOL.invoke(
                "c1", {"query": "SELECT 1"}, registry=reg, session_id="s1", on_registered=on_registered,
            )

    @pytest.mark.asyncio
    async def test_invalid_input_never_registers(self):
        reg = CallRegistry()
        called = []

        async def on_registered(payload):
            called.append(payload)

        result = await SQL_QUERY_TOOL.invoke(
            "c1", {"query": "DROP TABLE t_parsed"}, registry=reg, on_registered=on_registered,
        )
        assert isinstance(result, ToolFailure)
        assert result.error_type == "SQLValidationError"
        assert "Only read-only queries" in result.error
        assert called == []
        assert len(reg) == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_is_tool_failure(self):
        reg = CallRegistry()
        reg.register("c1", "executeSQLQuery", {})
        result = await SQL_QUERY_TOOL.invoke("c1", {"query": "SELECT 1"}, registry=reg)
        assert isinstance(result, ToolFailure)
        assert result.error_type == "DuplicateCallError"
        reg.resolve("c1", None)

    @pytest.mark.asyncio
    async def test_failing_publisher_releases_entry(self):
        reg = CallRegistry()

        async def on_registered(payload):
            raise ConnectionResetError("stream closed")

        with pytest.raises(ConnectionResetError):
            await SQL_QUERY_TOOL.invoke(
                "c1", {"query": "SELECT 1"}, registry=reg, on_registered=on_registered,
            )
        await asyncio.sleep(0)
        assert "c1" not in reg


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestResults:
    def test_decode_unwraps_data(self):
        result = decode_tool_result({"success": True, "data": {"rowCount": 3}})
        assert result == ToolSuccess(data={"rowCount": 3})

    def test_decode_keeps_other_fields(self):
        result = decode_tool_result({"success": True, "chartGenerated": True, "dataPoints": 4})
        assert result.data == {"chartGenerated": True, "dataPoints": 4}

    def test_decode_failure_default_error(self):
        result = decode_tool_result({"success": False}, default_hint="retry")
        assert isinstance(result, ToolFailure)
        assert result.error == "Unknown error"
        assert result.hint == "retry"

    def test_decode_failure_keeps_remote_hint(self):
        result = decode_tool_result({"success": False, "error": "x", "hint": "use LIMIT"})
        assert result.hint == "use LIMIT"

    def test_decode_scalar(self):
        assert decode_tool_result(7) == ToolSuccess(data=7)

    def test_content_is_json(self):
        content = tool_result_content(ToolFailure(error="boom", hint=None), 1000)
        assert json.loads(content) == {"success": False, "error": "boom", "error_type": "RemoteExecutionError"}

    def test_content_truncated(self):
        content = tool_result_content(ToolSuccess(data="x" * 500), 100)
        assert content.startswith('{"success":true')
        assert content.endswith("[truncated at 100 chars]")


class TestCustomTool:
    def test_tool_without_sql_fields(self):
        tool = RemoteTool(name="countRows", description="Count rows", input_model=SQLQueryInput)
        payload = tool.validate_input({"query": "anything goes"})
        assert payload["query"] == "anything goes"
