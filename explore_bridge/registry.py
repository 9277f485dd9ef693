"""In-flight tool call registry: the correlation table behind the bridge.

The step loop registers a call and awaits the returned handle; the completion
endpoint resolves or rejects it by call id when the remote executor answers.
Every registered call carries a deadline scheduled at registration.

Usage::

    from explore_bridge.registry import get_registry

    registry = get_registry()
    handle = registry.register("call_1", "executeSQLQuery", {"query": "SELECT 1"})
    # ... elsewhere, when the callback arrives:
    registry.resolve("call_1", {"success": True, "data": {...}})
    value = await handle

Settling removes the entry under the registry lock before the handle is
signalled, so of any number of concurrent resolve/reject/expire attempts for
one call id exactly one returns True and is delivered. Late or duplicate
completions return False; they are expected traffic, not faults.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from explore_bridge.config import DEFAULT_TOOL_TIMEOUT_S
from explore_bridge.errors import (
    CallCancelledError,
    CallTimeoutError,
    DuplicateCallError,
    RemoteExecutionError,
)

logger = logging.getLogger(__name__)

OUTCOME_RESOLVED = "resolved"
OUTCOME_REJECTED = "rejected"
OUTCOME_EXPIRED = "expired"
OUTCOME_CANCELLED = "cancelled"


@dataclass
class PendingCall:
    """One in-flight tool invocation awaiting its remote outcome."""

    call_id: str
    tool_name: str
    input: dict[str, Any]
    created_at: float
    timeout_s: float
    session_id: str | None = None
    outcome: str | None = None
    future: asyncio.Future[Any] | None = field(default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout_s


class CallRegistry:
    """Process-wide table of pending tool calls keyed by call id.

    Safe for use from several sessions and from threads other than the one
    running the awaiting event loop; handles are always completed on their
    own loop.
    """

    def __init__(
        self,
        default_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_timeout_s <= 0:
            raise ValueError(f"default_timeout_s must be positive, got {default_timeout_s!r}")
        self.default_timeout_s = default_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: dict[str, PendingCall] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._calls

    def get(self, call_id: str) -> PendingCall | None:
        """Return the pending call for ``call_id`` (for debugging), or None."""
        with self._lock:
            return self._calls.get(call_id)

    def pending_ids(self, session_id: str | None = None) -> list[str]:
        """Pending call ids, optionally restricted to one session."""
        with self._lock:
            return [
                cid for cid, call in self._calls.items()
                if session_id is None or call.session_id == session_id
            ]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        call_id: str,
        tool_name: str,
        input: dict[str, Any],
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Create a pending call and return the handle that completes with its outcome.

        Must be called from a running event loop. The handle resolves with the
        remote value, or raises RemoteExecutionError, CallTimeoutError, or
        CallCancelledError. Cancelling the handle drops the entry.

        Raises:
            DuplicateCallError: ``call_id`` is already pending.
            ValueError: ``timeout`` is not positive.
        """
        timeout_s = self.default_timeout_s if timeout is None else float(timeout)
        if timeout_s <= 0:
            raise ValueError(f"timeout must be positive, got {timeout!r}")
        loop = asyncio.get_running_loop()

        with self._lock:
            if call_id in self._calls:
                raise DuplicateCallError(f"Tool call {call_id!r} is already pending")
            future: asyncio.Future[Any] = loop.create_future()
            call = PendingCall(
                call_id=call_id,
                tool_name=tool_name,
                input=dict(input),
                created_at=self._clock(),
                timeout_s=timeout_s,
                session_id=session_id,
                future=future,
            )
            call.timer = loop.call_later(timeout_s, self.expire, call_id)
            self._calls[call_id] = call

        future.add_done_callback(partial(self._on_handle_done, call_id))
        logger.debug(
            "BRIDGE_REGISTER call_id=%s tool=%s session=%s timeout=%.1fs",
            call_id, tool_name, session_id, timeout_s,
        )
        return future

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def resolve(self, call_id: str, value: Any) -> bool:
        """Complete ``call_id`` with a success value. False if it is not pending."""
        return self._settle(call_id, OUTCOME_RESOLVED, value=value)

    def reject(self, call_id: str, error_message: str) -> bool:
        """Complete ``call_id`` with a remote failure. False if it is not pending."""
        return self._settle(
            call_id, OUTCOME_REJECTED, error=RemoteExecutionError(error_message),
        )

    def expire(self, call_id: str) -> bool:
        """Deadline callback: reject with CallTimeoutError if still pending."""
        call = self.get(call_id)
        if call is None:
            return False
        timeout_ms = int(call.timeout_s * 1000)
        settled = self._settle(
            call_id,
            OUTCOME_EXPIRED,
            error=CallTimeoutError(f"Tool execution timeout after {timeout_ms}ms"),
        )
        if settled:
            logger.warning(
                "BRIDGE_TIMEOUT call_id=%s tool=%s after %dms",
                call_id, call.tool_name, timeout_ms,
            )
        return settled

    def cancel_session(self, session_id: str, reason: str = "Exploration cancelled") -> int:
        """Reject every pending call of ``session_id`` with CallCancelledError.

        Returns the number of calls cancelled; a second invocation returns 0.
        """
        cancelled = 0
        for call_id in self.pending_ids(session_id):
            if self._settle(call_id, OUTCOME_CANCELLED, error=CallCancelledError(reason)):
                cancelled += 1
        if cancelled:
            logger.info("BRIDGE_CANCEL session=%s cancelled=%d", session_id, cancelled)
        return cancelled

    def cleanup_expired(self, now: float | None = None) -> int:
        """Expire every call whose deadline has passed. Returns the count."""
        current = self._clock() if now is None else now
        with self._lock:
            overdue = [cid for cid, call in self._calls.items() if current >= call.deadline]
        return sum(1 for cid in overdue if self.expire(cid))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle(
        self,
        call_id: str,
        outcome: str,
        *,
        value: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        with self._lock:
            call = self._calls.pop(call_id, None)
            if call is None:
                return False
            call.outcome = outcome

        future = call.future
        if future is None:
            return True
        loop = future.get_loop()
        try:
            running: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._complete(call, value, error)
        else:
            try:
                loop.call_soon_threadsafe(self._complete, call, value, error)
            except RuntimeError:
                logger.warning(
                    "BRIDGE_SETTLE call_id=%s outcome=%s: owning event loop is closed",
                    call_id, outcome,
                )
        logger.debug("BRIDGE_SETTLE call_id=%s outcome=%s", call_id, outcome)
        return True

    @staticmethod
    def _complete(call: PendingCall, value: Any, error: BaseException | None) -> None:
        if call.timer is not None:
            call.timer.cancel()
        future = call.future
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)

    def _on_handle_done(self, call_id: str, future: asyncio.Future[Any]) -> None:
        if not future.cancelled():
            return
        with self._lock:
            call = self._calls.get(call_id)
            if call is None or call.future is not future:
                return
            del self._calls[call_id]
            call.outcome = OUTCOME_CANCELLED
        if call.timer is not None:
            call.timer.cancel()
        logger.debug("BRIDGE_HANDLE_CANCELLED call_id=%s", call_id)


# ---------------------------------------------------------------------------
# Process-wide default
# ---------------------------------------------------------------------------

_default_lock = threading.Lock()
_default_registry: CallRegistry | None = None


def get_registry() -> CallRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _default_registry  # noqa: PLW0603
    with _default_lock:
        if _default_registry is None:
            _default_registry = CallRegistry()
        return _default_registry


def reset_registry(registry: CallRegistry | None = None) -> CallRegistry:
    """Replace the process-wide registry (fresh one if None). Returns it."""
    global _default_registry  # noqa: PLW0603
    with _default_lock:
        _default_registry = registry if registry is not None else CallRegistry()
        return _default_registry
