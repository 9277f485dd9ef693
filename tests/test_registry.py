"""Tests for explore_bridge.registry.

Covers:
- resolve / reject / expire delivery and the exactly-once settle rule
- out-of-order completion of concurrent calls
- duplicate registration
- session cancellation and handle cancellation
- completion from a foreign thread
- cleanup_expired with an injected clock
- the process-wide default registry
"""

import asyncio
import threading

import pytest

from explore_bridge.errors import (
    CallCancelledError,
    CallTimeoutError,
    DuplicateCallError,
    RemoteExecutionError,
)
from explore_bridge.registry import (
    OUTCOME_RESOLVED,
    CallRegistry,
    get_registry,
    reset_registry,
)


@pytest.fixture(autouse=True)
def _reset_default_registry():
    reset_registry()
    yield
    reset_registry()


# ---------------------------------------------------------------------------
# Resolution paths
# ---------------------------------------------------------------------------


class TestSettle:
    @pytest.mark.asyncio
    async def test_resolve_delivers_value(self):
        reg = CallRegistry()
        handle = reg.register("A", "executeSQLQuery", {"query": "SELECT 1"})
        assert "A" in reg
        assert reg.resolve("A", {"rows": [[1]]}) is True
        assert await handle == {"rows": [[1]]}
        assert "A" not in reg
        assert len(reg) == 0

    @pytest.mark.asyncio
    async def test_second_resolve_is_not_found(self):
        reg = CallRegistry()
        handle = reg.register("A", "executeSQLQuery", {})
        assert reg.resolve("A", 1) is True
        assert reg.resolve("A", 2) is False
        assert reg.reject("A", "late") is False
        assert await handle == 1

    @pytest.mark.asyncio
    async def test_reject_raises_remote_error(self):
        reg = CallRegistry()
        handle = reg.register("A", "executeSQLQuery", {})
        assert reg.reject("A", "no such column: foo") is True
        with pytest.raises(RemoteExecutionError, match="no such column: foo"):
            await handle

    @pytest.mark.asyncio
    async def test_unknown_id(self):
        reg = CallRegistry()
        assert reg.resolve("missing", 1) is False
        assert reg.reject("missing", "x") is False
        assert reg.expire("missing") is False

    @pytest.mark.asyncio
    async def test_pending_call_is_inspectable(self):
        reg = CallRegistry()
        reg.register("A", "executeSQLQuery", {"query": "SELECT 1"}, session_id="s1", timeout=5)
        call = reg.get("A")
        assert call is not None
        assert call.tool_name == "executeSQLQuery"
        assert call.input == {"query": "SELECT 1"}
        assert call.session_id == "s1"
        assert call.deadline == pytest.approx(call.created_at + 5)
        reg.resolve("A", None)
        assert reg.get("A") is None

    @pytest.mark.asyncio
    async def test_outcome_recorded_on_entry(self):
        reg = CallRegistry()
        reg.register("A", "t", {})
        call = reg.get("A")
        reg.resolve("A", 1)
        assert call.outcome == OUTCOME_RESOLVED


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


class TestTimeout:
    @pytest.mark.asyncio
    async def test_expires_after_timeout(self):
        reg = CallRegistry()
        handle = reg.register("A", "executeSQLQuery", {}, timeout=0.05)
        with pytest.raises(CallTimeoutError, match="Tool execution timeout after 50ms"):
            await handle
        assert "A" not in reg

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self):
        reg = CallRegistry()
        handle = reg.register("A", "t", {}, timeout=0.01)
        with pytest.raises(TimeoutError):
            await handle

    @pytest.mark.asyncio
    async def test_late_completion_after_timeout_is_not_found(self):
        reg = CallRegistry()
        handle = reg.register("A", "executeSQLQuery", {}, timeout=0.05)
        with pytest.raises(CallTimeoutError):
            await handle
        assert reg.resolve("A", {"late": True}) is False

    @pytest.mark.asyncio
    async def test_resolve_before_deadline_disarms_timer(self):
        reg = CallRegistry()
        handle = reg.register("A", "t", {}, timeout=0.05)
        reg.resolve("A", "ok")
        assert await handle == "ok"
        await asyncio.sleep(0.1)
        assert handle.result() == "ok"

    @pytest.mark.asyncio
    async def test_cleanup_expired_with_injected_clock(self):
        now = [100.0]
        reg = CallRegistry(clock=lambda: now[0])
        old = reg.register("old", "t", {}, timeout=30)
        now[0] = 120.0
        fresh = reg.register("fresh", "t", {}, timeout=30)
        now[0] = 131.0
        assert reg.cleanup_expired() == 1
        with pytest.raises(CallTimeoutError):
            await old
        assert not fresh.done()
        assert reg.pending_ids() == ["fresh"]
        reg.resolve("fresh", None)

    @pytest.mark.asyncio
    async def test_invalid_timeout(self):
        reg = CallRegistry()
        with pytest.raises(ValueError):
            reg.register("A", "t", {}, timeout=0)

    def test_invalid_default_timeout(self):
        with pytest.raises(ValueError):
            CallRegistry(default_timeout_s=-1)

    def test_register_requires_running_loop(self):
        reg = CallRegistry()
        with pytest.raises(RuntimeError):
            reg.register("A", "t", {})


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_out_of_order_completion(self):
        reg = CallRegistry()
        a = reg.register("A", "executeSQLQuery", {})
        b = reg.register("B", "executeSQLQuery", {})
        assert reg.resolve("B", "b") is True
        await asyncio.sleep(0)
        assert b.done()
        assert not a.done()
        assert reg.resolve("A", "a") is True
        assert await a == "a"
        assert await b == "b"

    @pytest.mark.asyncio
    async def test_duplicate_registration_rejected(self):
        reg = CallRegistry()
        reg.register("A", "t", {})
        with pytest.raises(DuplicateCallError):
            reg.register("A", "t", {})
        reg.resolve("A", 1)
        again = reg.register("A", "t", {})
        reg.resolve("A", 2)
        assert await again == 2

    @pytest.mark.asyncio
    async def test_cross_thread_resolve(self):
        reg = CallRegistry()
        handle = reg.register("A", "t", {})
        worker = threading.Thread(target=reg.resolve, args=("A", 42))
        worker.start()
        worker.join()
        assert await asyncio.wait_for(handle, timeout=1) == 42

    @pytest.mark.asyncio
    async def test_racing_completions_settle_once(self):
        reg = CallRegistry()
        handle = reg.register("A", "t", {})
        results: list[bool] = []
        barrier = threading.Barrier(8)

        def complete(i: int) -> None:
            barrier.wait()
            if i % 2:
                results.append(reg.resolve("A", i))
            else:
                results.append(reg.reject("A", f"err {i}"))

        threads = [threading.Thread(target=complete, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        try:
            await asyncio.wait_for(handle, timeout=1)
        except RemoteExecutionError:
            pass
        assert handle.done()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_session_rejects_only_that_session(self):
        reg = CallRegistry()
        a = reg.register("A", "t", {}, session_id="s1")
        b = reg.register("B", "t", {}, session_id="s1")
        c = reg.register("C", "t", {}, session_id="s2")

        assert reg.cancel_session("s1") == 2
        for handle in (a, b):
            with pytest.raises(CallCancelledError):
                await handle
        assert not c.done()
        assert reg.pending_ids() == ["C"]
        assert reg.pending_ids("s1") == []
        assert reg.cancel_session("s1") == 0
        reg.resolve("C", None)

    @pytest.mark.asyncio
    async def test_cancelled_handle_drops_entry(self):
        reg = CallRegistry()
        handle = reg.register("A", "t", {})
        handle.cancel()
        await asyncio.sleep(0)
        assert "A" not in reg
        assert reg.resolve("A", 1) is False


# ---------------------------------------------------------------------------
# Default registry
# ---------------------------------------------------------------------------


class TestDefaultRegistry:
    def test_singleton(self):
        assert get_registry() is get_registry()

    def test_reset_replaces(self):
        first = get_registry()
        custom = CallRegistry(default_timeout_s=5)
        assert reset_registry(custom) is custom
        assert get_registry() is custom
        assert get_registry() is not first
