"""
aidk/engine/persistence.py - Execution records via interceptors

The core never talks to a database. Instead, create_persistence_interceptors()
returns one interceptor per operation; installed on the engine's chain they
write execution, message and metrics records into an ExecutionStore.

Records are keyed by execution id, thread id and user id. Engine-level
operations read them from the envelope (the execution context is entered
inside the run); model and tool operations read the ambient
ExecutionContext, so their records nest under the engine record.

Usage:
    store = InMemoryExecutionStore()
    install_persistence(engine.interceptors, store)
    result = await engine.execute("Hello")

    record = await store.get_execution(result.execution_id)
    messages = await store.get_messages(result.execution_id)
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from aidk.content.messages import Message
from aidk.context import current_context
from aidk.exceptions import error_details
from aidk.middleware import Envelope, Interceptor, InterceptorChain, Next
from aidk.model.types import Usage
from aidk.observability.logger import get_logger

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionRecord(BaseModel):
    execution_id: str
    thread_id: Optional[str] = None
    user_id: Optional[str] = None
    kind: str = "root"
    parent_execution_id: Optional[str] = None
    operation: str = "engine.execute"
    status: str = "running"
    stop_reason: Optional[str] = None
    ticks: int = 0
    usage: Usage = Field(default_factory=Usage)
    error: Optional[dict[str, Any]] = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None


class MessageRecord(BaseModel):
    execution_id: str
    thread_id: Optional[str] = None
    user_id: Optional[str] = None
    tick: Optional[int] = None
    message: Message
    created_at: datetime = Field(default_factory=_now)


class MetricsRecord(BaseModel):
    """One model call or tool run."""
    execution_id: Optional[str] = None
    thread_id: Optional[str] = None
    user_id: Optional[str] = None
    tick: Optional[int] = None
    operation: str
    name: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    duration_ms: float = 0.0
    is_error: bool = False
    created_at: datetime = Field(default_factory=_now)


# ─────────────────────────────────────────────────────────────────────────────
# Stores
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionStore(ABC):

    @abstractmethod
    async def save_execution(self, record: ExecutionRecord) -> None: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]: ...

    @abstractmethod
    async def list_executions(self, thread_id: Optional[str] = None) -> list[ExecutionRecord]: ...

    @abstractmethod
    async def append_messages(self, records: list[MessageRecord]) -> None: ...

    @abstractmethod
    async def get_messages(self, execution_id: str) -> list[MessageRecord]: ...

    @abstractmethod
    async def record_metrics(self, record: MetricsRecord) -> None: ...

    @abstractmethod
    async def get_metrics(self, execution_id: str) -> list[MetricsRecord]: ...


class InMemoryExecutionStore(ExecutionStore):
    """Dict-backed store. Guarded by one asyncio.Lock; fine for tests and single processes."""

    def __init__(self) -> None:
        self._executions: dict[str, ExecutionRecord] = {}
        self._messages: dict[str, list[MessageRecord]] = {}
        self._metrics: dict[str, list[MetricsRecord]] = {}
        self._lock = asyncio.Lock()

    async def save_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._executions[record.execution_id] = record.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        async with self._lock:
            record = self._executions.get(execution_id)
            return record.model_copy(deep=True) if record else None

    async def list_executions(self, thread_id: Optional[str] = None) -> list[ExecutionRecord]:
        async with self._lock:
            records = [
                r for r in self._executions.values()
                if thread_id is None or r.thread_id == thread_id
            ]
        return sorted(records, key=lambda r: r.started_at)

    async def append_messages(self, records: list[MessageRecord]) -> None:
        if not records:
            return
        async with self._lock:
            for record in records:
                self._messages.setdefault(record.execution_id, []).append(record)

    async def get_messages(self, execution_id: str) -> list[MessageRecord]:
        async with self._lock:
            return list(self._messages.get(execution_id, ()))

    async def record_metrics(self, record: MetricsRecord) -> None:
        async with self._lock:
            self._metrics.setdefault(record.execution_id or "", []).append(record)

    async def get_metrics(self, execution_id: str) -> list[MetricsRecord]:
        async with self._lock:
            return list(self._metrics.get(execution_id, ()))

    def __repr__(self) -> str:
        return f"<InMemoryExecutionStore executions={len(self._executions)}>"


# ─────────────────────────────────────────────────────────────────────────────
# Interceptors
# ─────────────────────────────────────────────────────────────────────────────

def _ambient_keys(envelope: Envelope) -> dict[str, Any]:
    ctx = envelope.context or current_context()
    if ctx is None:
        return {"execution_id": envelope.execution_id, "thread_id": None, "user_id": None, "tick": envelope.tick}
    tick = envelope.tick
    if tick is None and ctx.com is not None:
        tick = ctx.com.tick
    return {
        "execution_id": ctx.execution_id,
        "thread_id": ctx.thread_id,
        "user_id": ctx.user_id,
        "tick": tick,
    }


def _apply_result(record: ExecutionRecord, result: Any) -> None:
    record.status = result.status.value
    record.stop_reason = result.stop_reason.value if result.stop_reason else None
    record.ticks = result.ticks
    record.usage = result.usage
    record.error = result.error
    record.completed_at = result.completed_at or _now()


def create_persistence_interceptors(store: ExecutionStore) -> dict[str, Interceptor]:
    """Return interceptors for every engine, model and tool operation."""

    def new_record(args: Any, envelope: Envelope) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=envelope.execution_id or "",
            thread_id=envelope.metadata.get("thread_id"),
            user_id=envelope.metadata.get("user_id"),
            kind=envelope.metadata.get("kind") or "root",
            parent_execution_id=envelope.metadata.get("parent_execution_id"),
            operation=envelope.operation,
        )

    async def save_input(args: Any, record: ExecutionRecord) -> None:
        await store.append_messages([
            MessageRecord(
                execution_id=record.execution_id,
                thread_id=record.thread_id,
                user_id=record.user_id,
                tick=1,
                message=m,
            )
            for m in getattr(args, "messages", ())
        ])

    async def persist_execute(args: Any, envelope: Envelope, next_: Next) -> Any:
        record = new_record(args, envelope)
        await store.save_execution(record)
        await save_input(args, record)
        try:
            result = await next_()
        except Exception as e:
            record.status = "failed"
            record.error = error_details(e)
            record.completed_at = _now()
            await store.save_execution(record)
            raise
        _apply_result(record, result)
        await store.save_execution(record)
        log.debug("persistence.execution_saved", execution_id=record.execution_id, status=record.status)
        return result

    async def persist_stream(args: Any, envelope: Envelope, next_: Next) -> Any:
        record = new_record(args, envelope)
        await store.save_execution(record)
        await save_input(args, record)
        events = await next_()

        async def _watch() -> AsyncIterator[Any]:
            try:
                async for event in events:
                    result = getattr(event, "result", None)
                    if event.type in ("execution_end", "error") and result is not None:
                        _apply_result(record, result)
                        await store.save_execution(record)
                    yield event
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

        return _watch()

    async def save_output(output: Any, keys: dict[str, Any]) -> None:
        await store.append_messages([
            MessageRecord(
                execution_id=keys["execution_id"] or "",
                thread_id=keys["thread_id"],
                user_id=keys["user_id"],
                tick=keys["tick"],
                message=m,
            )
            for m in output.messages
        ])

    async def persist_generate(args: Any, envelope: Envelope, next_: Next) -> Any:
        keys = _ambient_keys(envelope)
        start = time.monotonic()
        try:
            output = await next_()
        except Exception:
            await store.record_metrics(MetricsRecord(
                **keys,
                operation=envelope.operation,
                name=envelope.metadata.get("model"),
                duration_ms=(time.monotonic() - start) * 1000,
                is_error=True,
            ))
            raise
        await save_output(output, keys)
        await store.record_metrics(MetricsRecord(
            **keys,
            operation=envelope.operation,
            name=envelope.metadata.get("model"),
            usage=output.usage,
            duration_ms=(time.monotonic() - start) * 1000,
        ))
        return output

    async def persist_model_stream(args: Any, envelope: Envelope, next_: Next) -> Any:
        keys = _ambient_keys(envelope)
        start = time.monotonic()
        events = await next_()

        async def _watch() -> AsyncIterator[Any]:
            usage = Usage()
            is_error = True
            try:
                async for event in events:
                    if getattr(event, "type", None) == "message_end":
                        usage = event.usage
                    yield event
                is_error = False
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()
                await store.record_metrics(MetricsRecord(
                    **keys,
                    operation=envelope.operation,
                    name=envelope.metadata.get("model"),
                    usage=usage,
                    duration_ms=(time.monotonic() - start) * 1000,
                    is_error=is_error,
                ))

        return _watch()

    async def persist_tool(args: Any, envelope: Envelope, next_: Next) -> Any:
        keys = _ambient_keys(envelope)
        start = time.monotonic()
        is_error = True
        try:
            result = await next_()
            is_error = result.is_error
            return result
        finally:
            await store.record_metrics(MetricsRecord(
                **keys,
                operation=envelope.operation,
                name=envelope.metadata.get("tool_name"),
                duration_ms=(time.monotonic() - start) * 1000,
                is_error=is_error,
            ))

    return {
        "engine.execute": persist_execute,
        "engine.stream": persist_stream,
        "model.generate": persist_generate,
        "model.stream": persist_model_stream,
        "tool.run": persist_tool,
    }


def install_persistence(chain: InterceptorChain, store: ExecutionStore) -> list:
    """Register the persistence interceptors; returns their remove functions."""
    return [chain.use(op, fn) for op, fn in create_persistence_interceptors(store).items()]
