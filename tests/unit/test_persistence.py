"""
tests/unit/test_persistence.py - Persistence interceptor tests

Covers:
  - Execution records for execute() and stream(), completed and failed
  - Forked runs recorded with their kind and parent execution
  - Input and model-output messages keyed by execution/thread/user and tick
  - Metrics for model calls and tool runs
  - InMemoryExecutionStore isolation and thread filtering
  - Uninstalling the interceptors

Run with:
    pytest tests/unit/test_persistence.py -v
"""

from __future__ import annotations

import pytest

from aidk.compiler import section
from aidk.content.messages import Role
from aidk.context import require_context
from aidk.engine import (
    Engine,
    ExecutionRecord,
    InMemoryExecutionStore,
    install_persistence,
)
from aidk.exceptions import AdapterError
from aidk.model import ScriptedModel, ScriptedTurn
from aidk.tools import ToolDefinition, ToolRegistry


def Assistant(props):
    return section("You are a helpful assistant.", id="role")


@pytest.fixture
def store():
    return InMemoryExecutionStore()


def persisted_engine(store, model, **kwargs) -> Engine:
    engine = Engine(model, Assistant, **kwargs)
    install_persistence(engine.interceptors, store)
    return engine


# ─────────────────────────────────────────────────────────────────────────────
# Execution records
# ─────────────────────────────────────────────────────────────────────────────


class TestExecutionRecords:
    @pytest.mark.asyncio
    async def test_completed_execute(self, store):
        engine = persisted_engine(store, ScriptedModel(["Hi!"]))
        result = await engine.execute("Hello", thread_id="thread-1", user_id="u-1")

        record = await store.get_execution(result.execution_id)
        assert record.status == "completed"
        assert record.stop_reason == "stop"
        assert record.ticks == 1
        assert record.thread_id == "thread-1"
        assert record.user_id == "u-1"
        assert record.usage == result.usage
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_execute(self, store):
        engine = persisted_engine(store, ScriptedModel([]))
        with pytest.raises(AdapterError):
            await engine.execute("Hello", thread_id="thread-1")

        [record] = await store.list_executions("thread-1")
        assert record.status == "failed"
        assert record.error["type"] == "AdapterError"

    @pytest.mark.asyncio
    async def test_forked_run_records_its_parent(self, store):
        children = []

        def Child(props):
            return section("child", id="role")

        def reply(model_input):
            if model_input.messages[0].text == "child":
                return "child done"
            if model_input.messages[-1].role == Role.TOOL:
                return "parent done"
            return ScriptedTurn(tool_calls=[{"name": "start"}])

        def start() -> str:
            child = require_context().engine.fork("go", root=Child)
            children.append(child)
            return child.pid

        registry = ToolRegistry([ToolDefinition(name="start", handler=start)])
        engine = persisted_engine(store, ScriptedModel([reply], repeat_last=True), tools=registry)
        result = await engine.execute("Hello", thread_id="thread-1")
        await children[0]._task

        parent = await store.get_execution(result.execution_id)
        child = await store.get_execution(children[0].pid)
        assert parent.kind == "root"
        assert parent.parent_execution_id is None
        assert child.kind == "fork"
        assert child.parent_execution_id == result.execution_id
        assert child.thread_id == "thread-1"
        assert child.status == "completed"

    @pytest.mark.asyncio
    async def test_stream(self, store):
        engine = persisted_engine(store, ScriptedModel(["Hi!"]))
        events = [event async for event in engine.stream("Hello")]
        execution_id = events[-1].result.execution_id

        record = await store.get_execution(execution_id)
        assert record.operation == "engine.stream"
        assert record.status == "completed"

        metrics = await store.get_metrics(execution_id)
        assert [m.operation for m in metrics] == ["model.stream"]
        assert not metrics[0].is_error
        assert metrics[0].usage == events[-1].result.usage

    @pytest.mark.asyncio
    async def test_failed_stream(self, store):
        engine = persisted_engine(store, ScriptedModel([]))
        events = [event async for event in engine.stream("Hello")]

        record = await store.get_execution(events[-1].result.execution_id)
        assert record.status == "failed"
        assert record.stop_reason == "error"


# ─────────────────────────────────────────────────────────────────────────────
# Messages and metrics
# ─────────────────────────────────────────────────────────────────────────────


class TestMessagesAndMetrics:
    @pytest.mark.asyncio
    async def test_messages_are_keyed(self, store):
        engine = persisted_engine(store, ScriptedModel(["Hi!"]))
        result = await engine.execute("Hello", thread_id="thread-1", user_id="u-1")

        messages = await store.get_messages(result.execution_id)
        assert [(m.message.role, m.message.text) for m in messages] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi!"),
        ]
        assert {m.tick for m in messages} == {1}
        assert {m.thread_id for m in messages} == {"thread-1"}
        assert {m.user_id for m in messages} == {"u-1"}

    @pytest.mark.asyncio
    async def test_model_and_tool_metrics(self, store):
        registry = ToolRegistry([
            ToolDefinition(name="ping", handler=lambda: "pong"),
            ToolDefinition(name="fail", handler=lambda: 1 / 0),
        ])
        model = ScriptedModel([
            ScriptedTurn(tool_calls=[{"name": "ping"}, {"name": "fail"}]),
            "done",
        ])
        engine = persisted_engine(store, model, tools=registry)
        result = await engine.execute("Go")

        metrics = await store.get_metrics(result.execution_id)
        model_metrics = [m for m in metrics if m.operation == "model.generate"]
        tool_metrics = {m.name: m for m in metrics if m.operation == "tool.run"}

        assert [m.tick for m in model_metrics] == [1, 2]
        assert all(m.name == "scripted" for m in model_metrics)
        assert set(tool_metrics) == {"ping", "fail"}
        assert not tool_metrics["ping"].is_error
        assert tool_metrics["fail"].is_error
        assert tool_metrics["ping"].execution_id == result.execution_id
        assert tool_metrics["ping"].tick == 1

        messages = await store.get_messages(result.execution_id)
        assert [m.tick for m in messages] == [1, 1, 2]

    @pytest.mark.asyncio
    async def test_failed_model_call_metric(self, store):
        engine = persisted_engine(store, ScriptedModel([]))
        with pytest.raises(AdapterError):
            await engine.execute("Hello", thread_id="t")

        [record] = await store.list_executions("t")
        [metric] = await store.get_metrics(record.execution_id)
        assert metric.is_error


# ─────────────────────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────────────────────


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        await store.save_execution(ExecutionRecord(execution_id="exe_1"))
        record = await store.get_execution("exe_1")
        record.status = "tampered"
        assert (await store.get_execution("exe_1")).status == "running"

    @pytest.mark.asyncio
    async def test_list_filters_by_thread(self, store):
        await store.save_execution(ExecutionRecord(execution_id="a", thread_id="t1"))
        await store.save_execution(ExecutionRecord(execution_id="b", thread_id="t2"))
        await store.save_execution(ExecutionRecord(execution_id="c", thread_id="t1"))

        assert [r.execution_id for r in await store.list_executions("t1")] == ["a", "c"]
        assert len(await store.list_executions()) == 3

    @pytest.mark.asyncio
    async def test_unknown_ids(self, store):
        assert await store.get_execution("missing") is None
        assert await store.get_messages("missing") == []
        assert await store.get_metrics("missing") == []

    @pytest.mark.asyncio
    async def test_uninstall(self, store):
        engine = Engine(ScriptedModel(["Hi!"]), Assistant)
        removers = install_persistence(engine.interceptors, store)
        assert len(engine.interceptors) == 5

        for remove in removers:
            remove()
        assert len(engine.interceptors) == 0

        await engine.execute("Hello")
        assert await store.list_executions() == []
