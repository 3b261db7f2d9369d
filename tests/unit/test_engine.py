"""
tests/unit/test_engine.py - Engine tick loop tests

End-to-end runs of the engine against ScriptedModel. No network.

Covers:
  - Single-turn execute, stream and spawn
  - Tool calls: concurrency within a tick, result ordering, timeouts
  - max_ticks, component stop, terminal stop reasons
  - Cancellation while a tool is running
  - Confirmation flow through stream events
  - Recovery from model errors via Component.on_error
  - Streamed and buffered runs producing identical timelines
  - Interceptors and the ambient execution context

Run with:
    pytest tests/unit/test_engine.py -v
"""

from __future__ import annotations

import asyncio

import pytest
import structlog

from aidk.compiler import Component, RecoveryAction, fragment, section, tool
from aidk.content.blocks import TextBlock, ToolResultBlock
from aidk.content.messages import Message, Role, UserInput
from aidk.context import current_context
from aidk.engine import Engine, ExecutionHandle, ExecutionStatus
from aidk.exceptions import AdapterError, CancellationError
from aidk.model import ScriptedModel, ScriptedTurn, StopReason
from aidk.state.hooks import use_tick_start
from aidk.tools import DENIED_MESSAGE, ToolDefinition, ToolErrorType, ToolRegistry, ToolVariant


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures / helpers
# ─────────────────────────────────────────────────────────────────────────────


def Assistant(props):
    return section("You are a helpful assistant.", id="role")


CALC_SCHEMA = {
    "type": "object",
    "properties": {"expr": {"type": "string"}},
    "required": ["expr"],
}


@pytest.fixture
def registry():
    registry = ToolRegistry()

    @registry.register(name="calc", description="Evaluate arithmetic", parameters=CALC_SCHEMA)
    async def calc(expr: str) -> str:
        a, op, b = expr.split()
        return str(int(a) + int(b) if op == "+" else int(a) * int(b))

    return registry


def calc_call(expr: str, call_id: str) -> dict:
    return {"id": call_id, "name": "calc", "input": {"expr": expr}}


def roles(result) -> list[Role]:
    return [entry.role for entry in result.timeline]


async def drain(engine: Engine, user_input, **kwargs) -> list:
    return [event async for event in engine.stream(user_input, **kwargs)]


# ─────────────────────────────────────────────────────────────────────────────
# Basic runs
# ─────────────────────────────────────────────────────────────────────────────


class TestSingleTurn:
    @pytest.mark.asyncio
    async def test_hello(self):
        model = ScriptedModel(["Hi!"])
        result = await Engine(model, Assistant).execute("Hello")

        assert result.succeeded
        assert result.text == "Hi!"
        assert result.ticks == 1
        assert result.stop_reason == StopReason.STOP
        assert roles(result) == [Role.USER, Role.ASSISTANT]

        sent = model.inputs[0].messages
        assert sent[0].role == Role.SYSTEM
        assert sent[0].text == "You are a helpful assistant."
        assert sent[1].text == "Hello"

    @pytest.mark.asyncio
    async def test_stream_event_order(self):
        events = await drain(Engine(ScriptedModel(["Hi!"]), Assistant), "Hello")
        types = [e.type for e in events]
        assert types[:4] == ["execution_start", "tick_start", "message_start", "content_start"]
        assert types[-4:] == ["content_end", "message_end", "tick_end", "execution_end"]
        assert "".join(e.delta for e in events if e.type == "content_delta") == "Hi!"
        assert {e.execution_id for e in events} == {events[-1].result.execution_id}
        assert all(e.tick == 1 for e in events[1:-1])

    @pytest.mark.asyncio
    async def test_spawn(self):
        engine = Engine(ScriptedModel(["Hi!"]), Assistant)
        handle = engine.spawn("Hello", thread_id="thread-1")
        assert engine.get_handle(handle.pid) is handle

        types = [event.type async for event in handle.events]
        result = await handle.events.result()

        assert types[0] == "execution_start"
        assert types[-1] == "execution_end"
        assert result.text == "Hi!"
        assert (await handle.wait()).execution_id == result.execution_id
        assert engine.get_handle(handle.pid) is None

    @pytest.mark.asyncio
    async def test_user_input_variants(self):
        model = ScriptedModel(["ok"])
        await Engine(model, Assistant).execute([Message.user("one"), "two"])
        assert [m.text for m in model.inputs[0].messages[1:]] == ["one", "two"]

    def test_max_ticks_must_be_positive(self):
        with pytest.raises(ValueError):
            Engine(ScriptedModel([]), Assistant, max_ticks=0)


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────


class TestToolTicks:
    @pytest.mark.asyncio
    async def test_two_calls_in_one_tick(self, registry):
        model = ScriptedModel([
            ScriptedTurn(tool_calls=[calc_call("1 + 1", "a"), calc_call("2 * 3", "b")]),
            "1+1 is 2 and 2*3 is 6.",
        ])
        result = await Engine(model, Assistant, tools=registry).execute("Do some math")

        assert result.ticks == 2
        assert result.text == "1+1 is 2 and 2*3 is 6."
        assert roles(result) == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

        tool_message = result.timeline[2].message
        assert [b.tool_use_id for b in tool_message.content] == ["a", "b"]
        assert [b.content[0].text for b in tool_message.content] == ["2", "6"]
        assert all(entry.tick == 1 for entry in result.timeline[:3])
        assert result.timeline[3].tick == 2

        assert [t.name for t in model.inputs[0].tools] == ["calc"]
        assert model.inputs[1].messages[-1].role == Role.TOOL

    @pytest.mark.asyncio
    async def test_tool_results_follow_model_events(self, registry):
        model = ScriptedModel([ScriptedTurn(tool_calls=[calc_call("1 + 2", "a")]), "3"])
        events = await drain(Engine(model, Assistant, tools=registry), "Add")
        tick_one = [e.type for e in events if e.tick == 1]
        assert tick_one.index("message_end") < tick_one.index("tool_result") < tick_one.index("tick_end")

    @pytest.mark.asyncio
    async def test_component_tools_are_offered(self):
        seen = []
        lookup = ToolDefinition(name="lookup", handler=lambda: seen.append("called") or "found")

        def WithTool(props):
            return fragment(section("Use tools.", id="role"), tool(lookup))

        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "lookup"}]), "done"])
        result = await Engine(model, WithTool).execute("Find it")
        assert seen == ["called"]
        assert [t.name for t in model.inputs[0].tools] == ["lookup"]
        assert result.text == "done"

    @pytest.mark.asyncio
    async def test_tool_timeout_becomes_error_result(self):
        async def slow():
            await asyncio.sleep(5)

        registry = ToolRegistry([ToolDefinition(name="slow", handler=slow, timeout_seconds=0.05)])
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "slow"}]), "It timed out."])
        events = await drain(Engine(model, Assistant, tools=registry), "Go")

        results = [e.result for e in events if e.type == "tool_result"]
        assert results[0].is_error
        assert results[0].error_type == ToolErrorType.TIMEOUT.value
        assert events[-1].type == "execution_end"
        assert events[-1].result.text == "It timed out."

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self):
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "nope"}]), "Sorry."])
        result = await Engine(model, Assistant).execute("Go")
        tool_block = result.timeline[2].message.content[0]
        assert tool_block.is_error
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_terminal_stop_reason_skips_tools(self, registry):
        model = ScriptedModel([
            ScriptedTurn(tool_calls=[calc_call("1 + 1", "a")], stop_reason=StopReason.CONTENT_FILTER),
        ])
        result = await Engine(model, Assistant, tools=registry).execute("Go")
        assert result.ticks == 1
        assert result.stop_reason == StopReason.CONTENT_FILTER
        assert Role.TOOL not in roles(result)

    @pytest.mark.asyncio
    async def test_tool_sees_execution_context(self):
        seen = []
        registry = ToolRegistry([
            ToolDefinition(name="whoami", handler=lambda: seen.append(current_context()) or "ok"),
        ])
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "whoami"}]), "done"])
        result = await Engine(model, Assistant, tools=registry).execute("Go", thread_id="t-9")
        assert seen[0].execution_id == result.execution_id
        assert seen[0].thread_id == "t-9"
        assert current_context() is None


# ─────────────────────────────────────────────────────────────────────────────
# Stopping
# ─────────────────────────────────────────────────────────────────────────────


class TestStopping:
    @pytest.mark.asyncio
    async def test_max_ticks(self, registry):
        model = ScriptedModel([ScriptedTurn(tool_calls=[calc_call("1 + 1", None)])], repeat_last=True)
        result = await Engine(model, Assistant, tools=registry, max_ticks=3).execute("Loop")
        assert result.succeeded
        assert result.ticks == 3
        assert result.stop_reason == StopReason.MAX_TICKS_REACHED
        assert model.calls == 3

    @pytest.mark.asyncio
    async def test_component_stop(self, registry):
        def Stopper(props):
            use_tick_start(lambda com, state: state.stop() if state.tick == 2 else None)
            return section("Stop after one tool round.", id="role")

        model = ScriptedModel([ScriptedTurn(tool_calls=[calc_call("1 + 1", "a")]), "never sent"])
        result = await Engine(model, Stopper, tools=registry).execute("Go")
        assert result.ticks == 2
        assert model.calls == 1
        assert result.stop_reason == StopReason.EXPLICIT_COMPLETION


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    @staticmethod
    def blocking_registry(started: asyncio.Event, finished: list) -> ToolRegistry:
        async def wait_forever():
            started.set()
            try:
                await asyncio.sleep(30)
            finally:
                finished.append("cleaned up")

        return ToolRegistry([ToolDefinition(name="wait", handler=wait_forever, timeout_seconds=60)])

    @pytest.mark.asyncio
    async def test_cancel_spawned_run_mid_tool(self):
        started = asyncio.Event()
        finished = []
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "wait"}]), "unreachable"])
        engine = Engine(model, Assistant, tools=self.blocking_registry(started, finished))

        handle = engine.spawn("Start")
        await asyncio.wait_for(started.wait(), timeout=2)
        handle.cancel("user pressed stop")
        result = await asyncio.wait_for(handle.wait(), timeout=2)

        assert result.status == ExecutionStatus.FAILED
        assert result.stop_reason == StopReason.CANCELLED
        assert result.error["type"] == "CancellationError"
        assert result.error["reason"] == "user pressed stop"
        assert finished == ["cleaned up"]
        assert model.calls == 1
        assert roles(result) == [Role.USER, Role.ASSISTANT]
        assert result.timeline[1].content[0].type == "tool_use"

        types = [e.type async for e in handle.events]
        assert types[-1] == "error"

    @pytest.mark.asyncio
    async def test_execute_raises_cancellation(self):
        started = asyncio.Event()
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "wait"}])])
        engine = Engine(model, Assistant, tools=self.blocking_registry(started, []))

        handle = ExecutionHandle()
        task = asyncio.create_task(engine.execute("Start", handle=handle))
        await asyncio.wait_for(started.wait(), timeout=2)
        handle.cancel("shutdown")

        with pytest.raises(CancellationError):
            await task
        assert handle.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self):
        model = ScriptedModel([ScriptedTurn(text="slow", delay=5)])
        engine = Engine(model, Assistant)
        handle = engine.spawn("Hello")
        await asyncio.sleep(0.05)
        handle.cancel()
        result = await asyncio.wait_for(handle.wait(), timeout=2)
        assert result.stop_reason == StopReason.CANCELLED

    @pytest.mark.asyncio
    async def test_stream_closed_early_fails_the_handle(self):
        engine = Engine(ScriptedModel(["Hi there!"]), Assistant)
        handle = ExecutionHandle()
        events = engine.stream("Hello", handle=handle)
        async for event in events:
            if event.type == "tick_start":
                break
        await events.aclose()

        result = await asyncio.wait_for(handle.wait(), timeout=2)
        assert handle.status == ExecutionStatus.FAILED
        assert isinstance(handle.error, CancellationError)
        assert result.stop_reason == StopReason.CANCELLED
        assert result.error["reason"] == "stream closed by consumer"

    @pytest.mark.asyncio
    async def test_stream_closed_after_the_end_keeps_the_result(self):
        engine = Engine(ScriptedModel(["Hi!"]), Assistant)
        handle = ExecutionHandle()
        events = engine.stream("Hello", handle=handle)
        async for event in events:
            if event.type == "execution_end":
                break
        await events.aclose()

        assert handle.status == ExecutionStatus.COMPLETED
        assert (await handle.wait()).text == "Hi!"


# ─────────────────────────────────────────────────────────────────────────────
# Ambient context
# ─────────────────────────────────────────────────────────────────────────────


class TestContextIsolation:
    @staticmethod
    def engine(seen: dict, label: str) -> Engine:
        def whoami() -> str:
            ctx = current_context()
            seen[label] = ctx.thread_id if ctx is not None else None
            return "ok"

        registry = ToolRegistry([ToolDefinition(name="whoami", handler=whoami)])
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"name": "whoami"}]), "done"])
        return Engine(model, Assistant, tools=registry)

    @pytest.mark.asyncio
    async def test_interleaved_streams_keep_their_own_context(self):
        seen = {}
        a = self.engine(seen, "a").stream("A", thread_id="thread-a")
        b = self.engine(seen, "b").stream("B", thread_id="thread-b")

        assert (await a.__anext__()).type == "execution_start"
        assert (await b.__anext__()).type == "execution_start"
        assert current_context() is None

        async for _ in a:
            assert current_context() is None
        async for _ in b:
            assert current_context() is None

        assert seen == {"a": "thread-a", "b": "thread-b"}
        assert "execution_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_concurrent_executions(self):
        seen = {}
        await asyncio.gather(
            self.engine(seen, "a").execute("A", thread_id="thread-a"),
            self.engine(seen, "b").execute("B", thread_id="thread-b"),
        )
        assert seen == {"a": "thread-a", "b": "thread-b"}


# ─────────────────────────────────────────────────────────────────────────────
# Confirmation
# ─────────────────────────────────────────────────────────────────────────────


class TestConfirmation:
    @staticmethod
    def engine(answer_log: list) -> Engine:
        registry = ToolRegistry([
            ToolDefinition(
                name="delete_file",
                handler=lambda: answer_log.append("deleted") or "deleted",
                requires_confirmation=True,
                confirmation_message="Delete report.txt?",
            ),
        ])
        model = ScriptedModel([ScriptedTurn(tool_calls=[{"id": "del_1", "name": "delete_file"}]), "Done."])
        return Engine(model, Assistant, tools=registry)

    @pytest.mark.asyncio
    async def test_approved_through_stream(self):
        log = []
        engine = self.engine(log)
        types = []
        async for event in engine.stream("Clean up"):
            types.append(event.type)
            if event.type == "tool_confirmation_required":
                assert event.message == "Delete report.txt?"
                assert engine.resolve_confirmation(event.call.id, True)
            if event.type == "tool_result":
                assert not event.result.is_error

        assert log == ["deleted"]
        assert types.index("tool_confirmation_required") < types.index("tool_confirmation_result")
        assert types.index("tool_confirmation_result") < types.index("tool_result")

    @pytest.mark.asyncio
    async def test_denied_through_stream(self):
        log = []
        engine = self.engine(log)
        results = []
        async for event in engine.stream("Clean up"):
            if event.type == "tool_confirmation_required":
                engine.resolve_confirmation(event.call.id, False)
            if event.type == "tool_result":
                results.append(event.result)

        assert log == []
        assert results[0].text == DENIED_MESSAGE
        assert results[0].error_type == ToolErrorType.DENIED.value


# ─────────────────────────────────────────────────────────────────────────────
# Errors and recovery
# ─────────────────────────────────────────────────────────────────────────────


class Guarded(Component):
    def render(self, com, tick_state):
        return section("Be resilient.", id="role")

    async def on_error(self, com, error, phase):
        if phase == "model":
            return RecoveryAction(output="Sorry, the model is unavailable.")
        return None


class TestErrors:
    @pytest.mark.asyncio
    async def test_model_error_raises_from_execute(self):
        with pytest.raises(AdapterError):
            await Engine(ScriptedModel([]), Assistant).execute("Hello")

    @pytest.mark.asyncio
    async def test_model_error_ends_stream_with_error_event(self):
        events = await drain(Engine(ScriptedModel([]), Assistant), "Hello")
        assert events[-1].type == "error"
        assert events[-1].error["type"] == "AdapterError"
        assert events[-1].result.status == ExecutionStatus.FAILED
        assert events[-1].result.stop_reason == StopReason.ERROR

    @pytest.mark.asyncio
    async def test_on_error_recovery(self):
        result = await Engine(ScriptedModel([]), Guarded).execute("Hello")
        assert result.succeeded
        assert result.text == "Sorry, the model is unavailable."
        assert roles(result) == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_empty_compiled_input_is_rejected(self):
        events = await drain(Engine(ScriptedModel(["x"]), lambda props: None, auto_timeline=False), None)
        assert events[-1].type == "error"
        assert events[-1].error["type"] == "ValidationError"


# ─────────────────────────────────────────────────────────────────────────────
# Streamed vs buffered
# ─────────────────────────────────────────────────────────────────────────────


class TestModeEquivalence:
    @pytest.mark.asyncio
    async def test_timelines_match(self, registry):
        def script():
            return ScriptedModel([
                ScriptedTurn(text="Let me compute.", tool_calls=[calc_call("3 * 4", "m1")]),
                "The answer is 12.",
            ])

        buffered = await Engine(script(), Assistant, tools=registry).execute("3 times 4?")
        events = await drain(Engine(script(), Assistant, tools=registry), "3 times 4?")
        streamed = events[-1].result

        assert [e.signature() for e in streamed.timeline] == [e.signature() for e in buffered.timeline]
        assert streamed.usage == buffered.usage
        assert streamed.ticks == buffered.ticks == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("native_streaming", [True, False])
    async def test_provider_tool_results_survive_streaming(self, native_streaming):
        class Model(ScriptedModel):
            supports_streaming = native_streaming

        registry = ToolRegistry([ToolDefinition(name="web_search", variant=ToolVariant.PROVIDER)])

        def script():
            return Model([
                ScriptedTurn(
                    text="Searching.",
                    tool_calls=[{"id": "ws_1", "name": "web_search", "input": {"q": "aidk"}}],
                    blocks=[ToolResultBlock(tool_use_id="ws_1", name="web_search", content=[TextBlock(text="found")])],
                ),
                "Here is what I found.",
            ])

        buffered = await Engine(script(), Assistant, tools=registry).execute("Search")
        events = await drain(Engine(script(), Assistant, tools=registry), "Search")
        streamed = events[-1].result

        [tool_event] = [e for e in events if e.type == "tool_result"]
        assert not tool_event.result.is_error
        assert tool_event.result.text == "found"
        assert tool_event.result.executed_by == ToolVariant.PROVIDER
        assert [e.type for e in events].count("content_block") == 1
        assert [e.signature() for e in streamed.timeline] == [e.signature() for e in buffered.timeline]


# ─────────────────────────────────────────────────────────────────────────────
# Interceptors
# ─────────────────────────────────────────────────────────────────────────────


class TestInterceptors:
    @pytest.mark.asyncio
    async def test_execute_interceptor_can_rewrite_input(self):
        model = ScriptedModel(["ok"])
        engine = Engine(model, Assistant)

        @engine.interceptors.on("engine.execute")
        async def redact(user_input, envelope, next_):
            return await next_(UserInput.coerce(user_input.text.replace("secret", "[redacted]")))

        await engine.execute("my secret plan")
        assert model.inputs[0].messages[-1].text == "my [redacted] plan"

    @pytest.mark.asyncio
    async def test_model_and_tool_operations_are_wrapped(self, registry):
        seen = []
        engine = Engine(
            ScriptedModel([ScriptedTurn(tool_calls=[calc_call("1 + 1", "a")]), "2"]),
            Assistant,
            tools=registry,
        )

        async def record(args, envelope, next_):
            seen.append((envelope.operation, envelope.tick))
            return await next_()

        engine.interceptors.use("model.generate", record)
        engine.interceptors.use("tool.run", record)
        await engine.execute("Add")

        assert ("model.generate", 1) in seen
        assert ("model.generate", 2) in seen
        assert [op for op, _ in seen].count("tool.run") == 1

    @pytest.mark.asyncio
    async def test_stream_interceptor_sees_events(self):
        engine = Engine(ScriptedModel(["Hi"]), Assistant)
        counted = []

        async def count_events(args, envelope, next_):
            events = await next_()

            async def wrapped():
                async for event in events:
                    counted.append(event.type)
                    yield event

            return wrapped()

        engine.interceptors.use("model.stream", count_events)
        await drain(engine, "Hello")
        assert counted[0] == "message_start"
        assert counted[-1] == "message_end"
