"""
aidk/context.py - Ambient execution context

The engine sets an ExecutionContext for the duration of a run so that
code far from the engine (tool handlers, interceptors, nested executions)
can find the current execution without threading it through every call.
The context also binds execution_id/thread_id/user_id into every
structlog line.

Usage:
    ctx = current_context()
    if ctx is not None:
        log.info("tool.note", execution_id=ctx.execution_id)
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Optional

from aidk.exceptions import ContextError
from aidk.observability.logger import bind_execution, clear_execution

_current: ContextVar[Optional["ExecutionContext"]] = ContextVar("aidk_execution_context", default=None)


@dataclass
class ExecutionContext:
    execution_id: str
    thread_id: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    com: Any = None
    handle: Any = None
    parent: Optional["ExecutionContext"] = None
    engine: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def root(self) -> "ExecutionContext":
        ctx = self
        while ctx.parent is not None:
            ctx = ctx.parent
        return ctx


def current_context() -> Optional[ExecutionContext]:
    return _current.get()


def require_context() -> ExecutionContext:
    ctx = _current.get()
    if ctx is None:
        raise ContextError("No execution is running in this context")
    return ctx


def enter_context(ctx: ExecutionContext) -> Optional[ExecutionContext]:
    """Make ``ctx`` current; returns the previous context for ``exit_context``."""
    previous = _current.get()
    _current.set(ctx)
    bind_execution(ctx.execution_id, thread_id=ctx.thread_id, user_id=ctx.user_id)
    return previous


def exit_context(previous: Optional[ExecutionContext]) -> None:
    _current.set(previous)
    if previous is None:
        clear_execution()
    else:
        bind_execution(previous.execution_id, thread_id=previous.thread_id, user_id=previous.user_id)
