"""
aidk/middleware.py - Interceptor chains

Cross-cutting concerns (persistence, auditing, input rewriting) wrap the
engine's operations as interceptors with the signature

    async def interceptor(args, envelope, next): ...

``next()`` continues with the same args; ``next(new_args)`` continues
with replacements. An interceptor may also return without calling next,
or raise. Interceptors run in registration order, outermost first.

Streaming operations ("engine.stream", "model.stream") resolve to an
async iterator; an interceptor that wants to observe events wraps it:

    async def count_events(args, envelope, next):
        events = await next()

        async def wrapped():
            async for event in events:
                counter.inc()
                yield event

        return wrapped()

Usage:
    chain = InterceptorChain()
    chain.use("tool.run", audit_tool_calls)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from aidk.context import ExecutionContext
from aidk.observability.logger import get_logger

log = get_logger(__name__)

OPERATIONS = (
    "engine.execute",
    "engine.stream",
    "model.generate",
    "model.stream",
    "tool.run",
)

_UNSET: Any = object()

Next = Callable[..., Awaitable[Any]]
Interceptor = Callable[[Any, "Envelope", Next], Awaitable[Any]]


@dataclass
class Envelope:
    """Metadata about the operation being intercepted."""
    operation: str
    execution_id: Optional[str] = None
    tick: Optional[int] = None
    context: Optional[ExecutionContext] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class InterceptorChain:

    def __init__(self) -> None:
        self._interceptors: dict[str, list[Interceptor]] = {op: [] for op in OPERATIONS}

    def use(self, operation: str, interceptor: Interceptor) -> Callable[[], None]:
        """Append an interceptor; returns a function that removes it again."""
        if operation not in self._interceptors:
            raise ValueError(f"Unknown operation '{operation}'. Choose from: {list(OPERATIONS)}")
        self._interceptors[operation].append(interceptor)
        log.debug("interceptor.registered", operation=operation, interceptor=getattr(interceptor, "__name__", repr(interceptor)))

        def _remove() -> None:
            if interceptor in self._interceptors[operation]:
                self._interceptors[operation].remove(interceptor)

        return _remove

    def on(self, operation: str) -> Callable[[Interceptor], Interceptor]:
        """Decorator form of ``use``."""
        def decorator(fn: Interceptor) -> Interceptor:
            self.use(operation, fn)
            return fn

        return decorator

    def count(self, operation: str) -> int:
        return len(self._interceptors.get(operation, ()))

    async def run(
        self,
        operation: str,
        args: Any,
        envelope: Envelope,
        final: Callable[[Any], Awaitable[Any]],
    ) -> Any:
        chain = list(self._interceptors[operation])

        async def call(index: int, current: Any) -> Any:
            if index == len(chain):
                return await final(current)

            async def next_(new_args: Any = _UNSET) -> Any:
                return await call(index + 1, current if new_args is _UNSET else new_args)

            return await chain[index](current, envelope, next_)

        return await call(0, args)

    def __len__(self) -> int:
        return sum(len(v) for v in self._interceptors.values())

    def __repr__(self) -> str:
        counts = {op: len(v) for op, v in self._interceptors.items() if v}
        return f"<InterceptorChain {counts}>"
