"""Tests for explore_bridge.completion: mapping callbacks onto the registry."""

import pytest
from pydantic import ValidationError

from explore_bridge.completion import CallbackPayload, complete_call
from explore_bridge.errors import NotFoundError, RemoteExecutionError
from explore_bridge.registry import CallRegistry


class TestPayload:
    def test_call_id_alias(self):
        payload = CallbackPayload.model_validate({"callId": "c1", "success": True, "result": {}})
        assert payload.call_id == "c1"

    def test_tool_call_id_alias(self):
        payload = CallbackPayload.model_validate({"toolCallId": "c1", "success": False, "error": "x"})
        assert payload.call_id == "c1"
        assert payload.error == "x"

    def test_missing_success(self):
        with pytest.raises(ValidationError):
            CallbackPayload.model_validate({"callId": "c1"})

    def test_empty_call_id(self):
        with pytest.raises(ValidationError):
            CallbackPayload.model_validate({"callId": "", "success": True})


class TestCompleteCall:
    @pytest.mark.asyncio
    async def test_success_resolves(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        outcome = complete_call(reg, CallbackPayload(call_id="c1", success=True, result={"data": 1}))
        assert outcome.accepted
        assert outcome.outcome == "resolved"
        assert outcome.to_response() == {"success": True, "callId": "c1", "outcome": "resolved"}
        assert await handle == {"data": 1}

    @pytest.mark.asyncio
    async def test_failure_rejects_with_message(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        outcome = complete_call(reg, CallbackPayload(call_id="c1", success=False, error="Parser Error"))
        assert outcome.outcome == "rejected"
        with pytest.raises(RemoteExecutionError, match="Parser Error"):
            await handle

    @pytest.mark.asyncio
    async def test_success_without_result_is_unknown_error(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        outcome = complete_call(reg, CallbackPayload(call_id="c1", success=True))
        assert outcome.outcome == "rejected"
        with pytest.raises(RemoteExecutionError, match="Unknown error"):
            await handle

    @pytest.mark.asyncio
    async def test_failure_without_error_is_unknown_error(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        complete_call(reg, CallbackPayload(call_id="c1", success=False))
        with pytest.raises(RemoteExecutionError, match="Unknown error"):
            await handle

    def test_unknown_call_is_not_found(self):
        outcome = complete_call(CallRegistry(), CallbackPayload(call_id="ghost", success=True, result=1))
        assert not outcome.accepted
        assert outcome.outcome == "not-found"
        assert outcome.to_response() == {"error": "not found or already resolved", "callId": "ghost"}

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_not_found(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        assert complete_call(reg, CallbackPayload(call_id="c1", success=True, result=1)).accepted
        assert not complete_call(reg, CallbackPayload(call_id="c1", success=True, result=2)).accepted
        assert await handle == 1


class TestRaiseForOutcome:
    def test_not_found_raises(self):
        outcome = complete_call(CallRegistry(), CallbackPayload(call_id="ghost", success=False, error="late"))
        with pytest.raises(NotFoundError, match="ghost"):
            outcome.raise_for_outcome()

    @pytest.mark.asyncio
    async def test_accepted_returns_self(self):
        reg = CallRegistry()
        handle = reg.register("c1", "executeSQLQuery", {})
        outcome = complete_call(reg, CallbackPayload(call_id="c1", success=True, result=1))
        assert outcome.raise_for_outcome() is outcome
        assert await handle == 1
