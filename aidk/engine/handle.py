"""
aidk/engine/handle.py - Execution handle and cancellation

Every run gets an ExecutionHandle. It carries the run's identity and
status, the CancellationToken that aborts it, its place in the execution
graph and (for background runs) the task and push-based event stream.

Cancellation is cooperative: the engine checks the token at every
suspension point (tick boundary, model call, stream chunk, tool await)
and guard() races an in-flight await against the token so a cancel
aborts the work immediately instead of after it finishes.

Usage:
    handle = engine.spawn("Summarise the report")
    child = engine.fork("Check the sources", parent=handle)
    ...
    handle.cancel("user pressed stop")  # child is cancelled with it
    result = await handle.wait()        # status == failed, error.type == CancellationError
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from aidk.engine.result import ExecutionResult, ExecutionStatus
from aidk.exceptions import CancellationError
from aidk.observability.logger import get_logger
from aidk.utils import short_id

log = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._linked: list["CancellationToken"] = []

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        log.info("cancellation.requested", reason=reason)
        for child in list(self._linked):
            child.cancel(reason)

    def link(self, child: "CancellationToken") -> None:
        """Cancel ``child`` along with this token until it is unlinked."""
        if self.cancelled:
            child.cancel(self._reason or "Execution cancelled")
        elif child not in self._linked:
            self._linked.append(child)

    def unlink(self, child: Optional["CancellationToken"] = None) -> None:
        """Stop cascading to ``child``, or to every linked token when omitted."""
        if child is None:
            self._linked.clear()
        elif child in self._linked:
            self._linked.remove(child)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "Execution cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first; then cancel it and
        raise CancellationError.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        # Let the aborted work run its cleanup before we report the cancel
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(self._reason or "Execution cancelled")


class ExecutionHandle:
    """
    kind is "root" for execute/stream, "spawn" for an independent background
    run and "fork" for a child run. A fork's token is linked to its parent's
    while the parent runs, so cancelling the parent cancels the fork; once
    the parent finishes the fork carries on alone.
    """

    def __init__(
        self,
        pid: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        *,
        kind: str = "root",
        parent: Optional["ExecutionHandle"] = None,
    ) -> None:
        self.pid = pid or short_id("exe")
        self.token = token or CancellationToken()
        self.thread_id = thread_id
        self.user_id = user_id
        self.kind = kind
        self.parent = parent
        self.status = ExecutionStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self.com: Any = None
        self.context: Any = None
        self.tick = 0
        self.result: Optional[ExecutionResult] = None
        self.error: Optional[BaseException] = None
        self.events: Any = None           # EventStream for spawned and forked runs
        self._task: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()
        self._callbacks: list[Callable[["ExecutionHandle"], Any]] = []
        if parent is not None and not parent.done:
            parent.token.link(self.token)

    @property
    def execution_id(self) -> str:
        return self.pid

    @property
    def parent_pid(self) -> Optional[str]:
        return self.parent.pid if self.parent is not None else None

    @property
    def root_pid(self) -> str:
        return self.parent.root_pid if self.parent is not None else self.pid

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self, reason: str = "Execution cancelled") -> None:
        self.token.cancel(reason)

    async def wait(self) -> Optional[ExecutionResult]:
        """Wait for the run to finish; returns its result, failed or not."""
        await self._finished.wait()
        return self.result

    def add_done_callback(self, fn: Callable[["ExecutionHandle"], Any]) -> None:
        """fn(handle) once the run finishes; immediately if it already has."""
        if self.done:
            fn(self)
        else:
            self._callbacks.append(fn)

    def mark_completed(self, result: ExecutionResult) -> None:
        self.status = ExecutionStatus.COMPLETED
        self.result = result
        self._finish()

    def mark_failed(self, error: BaseException, result: Optional[ExecutionResult] = None) -> None:
        self.status = ExecutionStatus.FAILED
        self.error = error
        self.result = result
        self._finish()

    def _finish(self) -> None:
        self._finished.set()
        self.token.unlink()
        if self.parent is not None:
            self.parent.token.unlink(self.token)
        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn(self)
            except Exception as e:
                log.error("handle.callback_failed", pid=self.pid, error=str(e), exc_info=True)

    def __repr__(self) -> str:
        return f"<ExecutionHandle {self.pid} kind={self.kind} status={self.status.value} tick={self.tick}>"
