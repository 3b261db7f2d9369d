"""
aidk/com/object_model.py - Context Object Model

The COM is the single mutable context of one execution: the timeline,
the user input snapshot, a key/value state bag that components share, and
the recompile flag components raise when they changed something the
current compile already consumed.

State writes are synchronous and ordered on the event loop. Callers that
need read-modify-write across awaits take ``com.lock(key)``.

Usage:
    com = ContextObjectModel("Hello")
    com.set_state("mode", "draft")
    async with com.lock("mode"):
        ...
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from aidk.com.timeline import Timeline
from aidk.content.messages import UserInput
from aidk.observability.logger import get_logger
from aidk.state.signals import values_equal
from aidk.utils import short_id

log = get_logger(__name__)

StateListener = Callable[[str, Any, Any], Any]


class ContextObjectModel:

    def __init__(
        self,
        user_input: Any = None,
        *,
        execution_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.execution_id = execution_id or short_id("exe")
        self.user_input = UserInput.coerce(user_input)
        self.timeline = Timeline()
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.tick = 0
        self._state: dict[str, Any] = {}
        self._listeners: list[StateListener] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._recompile_reasons: list[str] = []
        self._compiling = False
        self._wait_handles: list[Any] = []

    # ── State ─────────────────────────────────────────────────────────────────

    def get_state(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def has_state(self, key: str) -> bool:
        return key in self._state

    def set_state(self, key: str, value: Any) -> bool:
        """Write a key; returns False when the value was equal and nothing changed."""
        missing = key not in self._state
        old = self._state.get(key)
        if not missing and values_equal(old, value):
            return False
        self._state[key] = value
        log.debug("com.state_set", key=key, compiling=self._compiling)
        if self._compiling:
            self.request_recompile(f"state:{key}")
        for listener in list(self._listeners):
            listener(key, value, old)
        return True

    def state(self) -> dict[str, Any]:
        """Shallow copy of the state bag."""
        return dict(self._state)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """listener(key, new, old) after each effective write. Returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def lock(self, key: str) -> asyncio.Lock:
        """Per-key lock for callers that read, await, then write the same key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Recompile requests ────────────────────────────────────────────────────

    def request_recompile(self, reason: str = "requested") -> None:
        self._recompile_reasons.append(reason)

    @property
    def recompile_requested(self) -> bool:
        return bool(self._recompile_reasons)

    def consume_recompile_requests(self) -> list[str]:
        reasons, self._recompile_reasons = self._recompile_reasons, []
        return reasons

    # ── Child executions ──────────────────────────────────────────────────────

    def wait_for(self, handle: Any) -> None:
        """Hold this tick's model call until ``handle`` (an ExecutionHandle) finishes."""
        if handle not in self._wait_handles:
            self._wait_handles.append(handle)

    def take_wait_handles(self) -> list[Any]:
        handles, self._wait_handles = self._wait_handles, []
        return [h for h in handles if not h.done]

    def begin_compile(self) -> None:
        self._compiling = True

    def end_compile(self) -> None:
        self._compiling = False

    @property
    def compiling(self) -> bool:
        return self._compiling

    def __repr__(self) -> str:
        return (
            f"<ContextObjectModel {self.execution_id} tick={self.tick} "
            f"entries={len(self.timeline)} keys={sorted(self._state)}>"
        )
