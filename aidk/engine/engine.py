"""
aidk/engine/engine.py - The tick loop

One execution is a sequence of ticks:

    Init
      → for each tick:
          TickStart   component on_tick_start hooks
          Compile     component tree → CompiledStructure → ModelInput
          ModelCall   buffered generate() or streamed events
          Tools       run the model's tool calls concurrently
          TickEnd     component on_tick_end hooks
          Decide      stop / continue
      → Terminal      ExecutionResult (completed or failed)

Stop conditions, checked after every tick:
  - a component called tick_state.stop(reason)
  - the model returned a terminal stop reason (content_filter, error,
    explicit_completion, paused)
  - the model made no tool calls
  - max_ticks ticks have run  (completed, stop reason max_ticks_reached)
  - the CancellationToken fired (failed, CancellationError)

The timeline order within a tick is fixed and identical in both modes:
user input (tick 1 only), the model's messages, then one tool message with
every result of the tick in call order.

Usage:
    engine = Engine(model, Assistant, tools=registry)
    result = await engine.execute("Hello")

    async for event in engine.stream("Hello"):
        ...
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from aidk.com.object_model import ContextObjectModel
from aidk.com.timeline import TickState
from aidk.compiler.compiler import DEFAULT_MAX_ITERATIONS, Compiler
from aidk.compiler.structure import render_messages
from aidk.content.messages import Message, Role, UserInput
from aidk.context import ExecutionContext, current_context, enter_context, exit_context
from aidk.engine.events import (
    ErrorEvent,
    ExecutionEndEvent,
    ExecutionStartEvent,
    TickEndEvent,
    TickStartEvent,
    ToolConfirmationRequiredEvent,
    ToolConfirmationResultEvent,
    ToolResultEvent,
    is_terminal,
    output_to_events,
    terminal_result,
)
from aidk.engine.graph import ExecutionGraph
from aidk.engine.handle import CancellationToken, ExecutionHandle
from aidk.engine.result import ExecutionResult, ExecutionStatus
from aidk.engine.stream import EventStream
from aidk.exceptions import CancellationError, StateError, ValidationError, error_details
from aidk.middleware import Envelope, InterceptorChain
from aidk.model.types import TERMINAL_STOP_REASONS, ModelInput, ModelOutput, StopReason, Usage
from aidk.observability.logger import bind_tick, get_logger
from aidk.tools.executor import ToolExecutor
from aidk.tools.registry import ToolRegistry
from aidk.tools.routing import HttpToolRouter
from aidk.tools.types import ToolDefinition, ToolResult

log = get_logger(__name__)

DEFAULT_MAX_TICKS = 10


class Engine:
    """
    Args:
        model:     A ModelAdapter (anything with generate/stream/process_stream).
        root:      Root of the component tree: a node, a Component subclass
                   or a function component.
        tools:     ToolRegistry or iterable of ToolDefinitions available on
                   every tick, in addition to tools declared in the tree.
        renderer:  Default renderer for compiled content ("markdown" | "xml"
                   or a Renderer).
        max_ticks: Hard upper bound on ticks per execution.
        executor:  ToolExecutor; one is created when omitted.
        interceptors: Chain wrapping engine/model/tool operations. Shared
                   with the executor.
        model_options: model / temperature / max_tokens passed on every call.
    """

    def __init__(
        self,
        model: Any,
        root: Any,
        *,
        tools: Optional[ToolRegistry | Iterable[ToolDefinition]] = None,
        renderer: Any = None,
        max_ticks: int = DEFAULT_MAX_TICKS,
        max_compile_iterations: int = DEFAULT_MAX_ITERATIONS,
        auto_timeline: bool = True,
        executor: Optional[ToolExecutor] = None,
        interceptors: Optional[InterceptorChain] = None,
        model_options: Optional[dict[str, Any]] = None,
    ):
        if max_ticks < 1:
            raise ValueError("max_ticks must be >= 1")
        self.model = model
        self.root = root
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools or ())
        if interceptors is None:
            interceptors = executor.interceptors if executor is not None else InterceptorChain()
        self.interceptors = interceptors
        self.executor = executor or ToolExecutor(interceptors=interceptors)
        self.executor.interceptors = interceptors
        self.renderer = renderer
        self.max_ticks = max_ticks
        self.max_compile_iterations = max_compile_iterations
        self.auto_timeline = auto_timeline
        self.model_options = {
            k: v for k, v in (model_options or {}).items()
            if k in ("model", "temperature", "max_tokens") and v is not None
        }
        self._handles: dict[str, ExecutionHandle] = {}
        self.graph = ExecutionGraph()

    @classmethod
    def from_settings(cls, model: Any, root: Any, settings: Any = None, **overrides: Any) -> "Engine":
        """Wire an engine (executor timeouts, routers, limits) from Settings."""
        if settings is None:
            from aidk.config.settings import get_settings
            settings = get_settings()

        executor = ToolExecutor(
            timeout_seconds=settings.tools.timeout_seconds,
            confirmation_timeout_seconds=settings.tools.confirmation_timeout_seconds,
            client_timeout_seconds=settings.tools.client_timeout_seconds,
            max_result_chars=settings.tools.max_result_chars,
        )
        for name, router in settings.tools.routers.items():
            if router.enabled:
                executor.add_router(HttpToolRouter(
                    name=name,
                    url=router.url,
                    headers=router.headers,
                    timeout_seconds=router.timeout_seconds,
                ))

        options: dict[str, Any] = {
            "renderer": settings.engine.renderer,
            "max_ticks": settings.engine.max_ticks,
            "max_compile_iterations": settings.engine.max_compile_iterations,
            "auto_timeline": settings.engine.auto_timeline,
            "executor": executor,
            "model_options": settings.model.model_dump(),
        }
        options.update(overrides)
        return cls(model, root, **options)

    # ── Public API ────────────────────────────────────────────────────────────

    async def execute(
        self,
        user_input: Any = None,
        *,
        root: Any = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        handle: Optional[ExecutionHandle] = None,
    ) -> ExecutionResult:
        """Run to completion. Returns the result, or raises the terminal error."""
        handle = handle or self._new_handle(thread_id, user_id)
        envelope = self._envelope("engine.execute", handle)

        async def _final(args: UserInput) -> ExecutionResult:
            async for _ in self._run(args, root or self.root, handle, streaming=False):
                pass
            if handle.error is not None:
                raise handle.error
            return handle.result

        return await self.interceptors.run("engine.execute", UserInput.coerce(user_input), envelope, _final)

    async def stream(
        self,
        user_input: Any = None,
        *,
        root: Any = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        handle: Optional[ExecutionHandle] = None,
    ) -> AsyncIterator[Any]:
        """Run while yielding StreamEvents. Failures end with an ``error`` event."""
        handle = handle or self._new_handle(thread_id, user_id)
        envelope = self._envelope("engine.stream", handle)

        async def _final(args: UserInput) -> AsyncIterator[Any]:
            return self._run(args, root or self.root, handle, streaming=True)

        events = await self.interceptors.run("engine.stream", UserInput.coerce(user_input), envelope, _final)
        try:
            async for event in events:
                yield event
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    def spawn(
        self,
        user_input: Any = None,
        *,
        root: Any = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionHandle:
        """Start an independent run in the background; events arrive on ``handle.events``."""
        handle = self._new_handle(thread_id, user_id, kind="spawn")
        self._start(handle, UserInput.coerce(user_input), root)
        log.info("engine.spawn", pid=handle.pid)
        return handle

    def fork(
        self,
        user_input: Any = None,
        *,
        root: Any = None,
        parent: Optional[ExecutionHandle | str] = None,
        inherit_timeline: bool = False,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionHandle:
        """
        Start a child run in the background. ``parent`` defaults to the run
        this is called from; cancelling the parent while it runs cancels the
        child. With ``inherit_timeline`` the child starts from a copy of the
        parent's history followed by ``user_input``.
        """
        if isinstance(parent, str):
            resolved = self.graph.get(parent) or self._handles.get(parent)
            if resolved is None:
                raise StateError(f"Unknown parent execution '{parent}'", details={"parent_pid": parent})
            parent = resolved
        if parent is None:
            ctx = current_context()
            parent = ctx.handle if ctx is not None else None
        if parent is None:
            raise StateError("fork() needs a parent: call it inside an execution or pass parent=")

        args = UserInput.coerce(user_input)
        if inherit_timeline and parent.com is not None:
            history = tuple(m.model_copy(deep=True) for m in parent.com.timeline.messages())
            args = UserInput(messages=history + args.messages, metadata=dict(args.metadata))

        handle = self._new_handle(
            thread_id or parent.thread_id,
            user_id or parent.user_id,
            kind="fork",
            parent=parent,
        )
        self._start(handle, args, root)
        log.info("engine.fork", pid=handle.pid, parent_pid=parent.pid, inherit_timeline=inherit_timeline)
        return handle

    def get_handle(self, execution_id: str) -> Optional[ExecutionHandle]:
        return self._handles.get(execution_id)

    def resolve_confirmation(self, tool_use_id: str, confirmed: bool) -> bool:
        return self.executor.confirmations.resolve(tool_use_id, confirmed)

    def resolve_client_result(self, tool_use_id: str, content: Any, is_error: bool = False) -> bool:
        return self.executor.client_tools.resolve(tool_use_id, content, is_error=is_error)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _new_handle(
        self,
        thread_id: Optional[str],
        user_id: Optional[str],
        kind: str = "root",
        parent: Optional[ExecutionHandle] = None,
    ) -> ExecutionHandle:
        handle = ExecutionHandle(
            token=CancellationToken(),
            thread_id=thread_id,
            user_id=user_id,
            kind=kind,
            parent=parent,
        )
        self._register(handle)
        return handle

    def _register(self, handle: ExecutionHandle) -> None:
        self._handles[handle.pid] = handle
        if handle.pid not in self.graph:
            self.graph.register(handle)

    def _start(self, handle: ExecutionHandle, user_input: UserInput, root: Any) -> None:
        handle.events = EventStream(is_terminal, terminal_result)

        async def _drive() -> None:
            try:
                async for event in self.stream(user_input, root=root, handle=handle):
                    handle.events.push(event)
            except BaseException as e:
                handle.events.end(error=e)
                raise
            finally:
                handle.events.end(result=handle.result)

        handle._task = asyncio.create_task(_drive())

    @staticmethod
    def _envelope(operation: str, handle: ExecutionHandle, tick: Optional[int] = None, **metadata: Any) -> Envelope:
        return Envelope(
            operation=operation,
            execution_id=handle.pid,
            tick=tick,
            context=current_context(),
            metadata={
                "thread_id": handle.thread_id,
                "user_id": handle.user_id,
                "kind": handle.kind,
                "parent_execution_id": handle.parent_pid,
                **metadata,
            },
        )

    async def _run(
        self,
        user_input: UserInput,
        root: Any,
        handle: ExecutionHandle,
        streaming: bool,
    ) -> AsyncIterator[Any]:
        """
        Drive the tick loop in its own task and relay its events.

        The task runs in a copy of the caller's context, so the execution's
        ambient context and log bindings never reach the consumer or any
        other execution consumed from the same task. The queue holds one
        event; the loop stays at most one event ahead of the consumer.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)

        async def _produce() -> None:
            ticks = self._ticks(user_input, root, handle, streaming)
            try:
                async for event in ticks:
                    await queue.put(event)
            finally:
                await ticks.aclose()

        producer = asyncio.create_task(_produce())
        getter: Optional[asyncio.Future] = None
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({producer, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                producer.result()
                break
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not producer.done():
                handle.token.cancel("stream closed by consumer")
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    async def _ticks(
        self,
        user_input: UserInput,
        root: Any,
        handle: ExecutionHandle,
        streaming: bool,
    ) -> AsyncIterator[Any]:
        self._register(handle)
        com = ContextObjectModel(user_input, execution_id=handle.pid)
        compiler = Compiler(self.renderer, max_iterations=self.max_compile_iterations)
        if handle.kind == "fork":
            parent_ctx = handle.parent.context
        elif handle.kind == "spawn":
            parent_ctx = None
        else:
            parent_ctx = current_context()
        ctx = ExecutionContext(
            execution_id=handle.pid,
            thread_id=handle.thread_id,
            user_id=handle.user_id,
            com=com,
            handle=handle,
            parent=parent_ctx,
            engine=self,
        )
        handle.com = com
        handle.context = ctx
        previous_ctx = enter_context(ctx)
        token = handle.token

        usage = Usage()
        ticks = 0
        stop_reason: Optional[StopReason] = None
        last_message: Optional[Message] = None

        def build_result(status: ExecutionStatus, error: Optional[dict[str, Any]] = None) -> ExecutionResult:
            return ExecutionResult(
                execution_id=handle.pid,
                status=status,
                stop_reason=stop_reason,
                ticks=ticks,
                output=last_message,
                timeline=list(com.timeline.entries),
                usage=usage,
                error=error,
                started_at=handle.started_at,
                completed_at=datetime.now(timezone.utc),
            )

        def stamp(event: Any, tick: Optional[int] = None) -> Any:
            event.execution_id = handle.pid
            if tick is not None:
                event.tick = tick
            return event

        log.info(
            "engine.execution_start",
            streaming=streaming,
            kind=handle.kind,
            parent_pid=handle.parent_pid,
            max_ticks=self.max_ticks,
            root=getattr(root, "__name__", type(root).__name__),
        )

        try:
            yield stamp(ExecutionStartEvent())
            mark = 0
            previous_output: Optional[ModelOutput] = None

            while True:
                token.raise_if_cancelled()
                if ticks >= self.max_ticks:
                    stop_reason = StopReason.MAX_TICKS_REACHED
                    log.warning("engine.max_ticks_reached", max_ticks=self.max_ticks)
                    break

                ticks += 1
                tick = ticks
                com.tick = tick
                handle.tick = tick
                bind_tick(tick)

                if tick == 1:
                    for message in com.user_input.messages:
                        com.timeline.append_message(message, tick)

                tick_state = TickState(tick, com.timeline.since(mark), previous=previous_output)
                log.info("engine.tick_start", entries=len(com.timeline))
                yield stamp(TickStartEvent(), tick)

                # ── Compile ───────────────────────────────────────────────────
                await token.guard(compiler.notify_tick_start(com, tick_state))
                structure = await token.guard(compiler.compile_until_stable(root, com, tick_state))
                for _ in range(self.max_compile_iterations):
                    waiting = com.take_wait_handles()
                    if not waiting:
                        break
                    log.info("engine.waiting_for_children", pids=[h.pid for h in waiting])
                    await token.guard(asyncio.gather(*(h.wait() for h in waiting)))
                    structure = await token.guard(compiler.compile_until_stable(root, com, tick_state))

                if tick_state.stop_requested:
                    stop_reason = StopReason.coerce(tick_state.stop_reason)
                    log.info("engine.stopped_by_component", reason=stop_reason.value)
                    yield stamp(TickEndEvent(), tick)
                    break

                tools = self.registry.merged(structure.tools)
                model_input = ModelInput(
                    messages=render_messages(structure, com, compiler.renderer, self.auto_timeline),
                    tools=[t.to_spec() for t in tools.values()],
                    **self.model_options,
                )
                if not model_input.messages:
                    raise ValidationError("Compiled model input has no messages", details={"tick": tick})

                # ── Model call ────────────────────────────────────────────────
                output: Optional[ModelOutput] = None
                try:
                    if streaming:
                        events: list[Any] = []
                        async for event in self._model_stream(model_input, handle, tick):
                            events.append(event)
                            yield stamp(event, tick)
                        output = self.model.process_stream(events)
                    else:
                        output = await token.guard(self._model_generate(model_input, handle, tick))
                        for event in output_to_events(output):
                            yield stamp(event, tick)
                except (CancellationError, asyncio.CancelledError):
                    raise
                except Exception as e:
                    action = await compiler.notify_error(com, e, "model")
                    if action is None or not action.continue_execution or action.output is None:
                        raise
                    output = _coerce_output(action.output)
                    log.warning("engine.model_error_recovered", error=str(e))
                    for event in output_to_events(output):
                        yield stamp(event, tick)

                next_mark = len(com.timeline)
                usage = usage + output.usage
                for message in output.messages:
                    com.timeline.append_message(message, tick)
                    if message.role == Role.ASSISTANT:
                        last_message = message
                tick_state.output = output
                stop_reason = output.stop_reason

                # ── Tools ─────────────────────────────────────────────────────
                terminal = output.stop_reason in TERMINAL_STOP_REASONS
                if output.tool_calls and not terminal:
                    results: list[ToolResult] = []
                    async for event in self._run_tools(output, tools, token, results):
                        yield stamp(event, tick)
                    com.timeline.append_message(Message.tool([r.to_block() for r in results]), tick)
                    for result in results:
                        yield stamp(ToolResultEvent(result=result), tick)

                await token.guard(compiler.notify_tick_end(com, tick_state))
                yield stamp(TickEndEvent(response=output, usage=output.usage), tick)
                log.info(
                    "engine.tick_end",
                    stop_reason=output.stop_reason.value,
                    tool_calls=len(output.tool_calls),
                )

                previous_output = output
                mark = next_mark

                # ── Decide ────────────────────────────────────────────────────
                if tick_state.stop_requested:
                    stop_reason = StopReason.coerce(tick_state.stop_reason)
                    break
                if terminal or not output.tool_calls:
                    break

            result = build_result(ExecutionStatus.COMPLETED)
            handle.mark_completed(result)
            await compiler.notify_complete(com, result)
            log.info(
                "engine.execution_complete",
                ticks=ticks,
                stop_reason=stop_reason.value if stop_reason else None,
                total_tokens=usage.total_tokens,
            )
            yield stamp(ExecutionEndEvent(result=result))

        except (CancellationError, asyncio.CancelledError) as e:
            error = e if isinstance(e, CancellationError) else CancellationError(token.reason or "Execution cancelled")
            stop_reason = StopReason.CANCELLED
            result = build_result(ExecutionStatus.FAILED, error_details(error))
            handle.mark_failed(error, result)
            log.warning("engine.execution_cancelled", reason=error.reason, ticks=ticks)
            if isinstance(e, asyncio.CancelledError):
                raise
            yield stamp(ErrorEvent(error=error_details(error), result=result))

        except GeneratorExit:
            if not handle.done:
                error = CancellationError(token.reason or "stream closed by consumer")
                stop_reason = StopReason.CANCELLED
                handle.mark_failed(error, build_result(ExecutionStatus.FAILED, error_details(error)))
                log.warning("engine.execution_abandoned", reason=error.reason, ticks=ticks)
            raise

        except Exception as e:
            stop_reason = StopReason.ERROR
            result = build_result(ExecutionStatus.FAILED, error_details(e))
            handle.mark_failed(e, result)
            log.error("engine.execution_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            yield stamp(ErrorEvent(error=error_details(e), result=result))

        finally:
            await compiler.unmount_all(com)
            exit_context(previous_ctx)
            self._handles.pop(handle.pid, None)
            self.graph.settle(handle.pid)

    async def _model_generate(self, model_input: ModelInput, handle: ExecutionHandle, tick: int) -> ModelOutput:
        envelope = self._envelope("model.generate", handle, tick, model=getattr(self.model, "name", None))
        return await self.interceptors.run("model.generate", model_input, envelope, self.model.generate)

    async def _model_stream(self, model_input: ModelInput, handle: ExecutionHandle, tick: int) -> AsyncIterator[Any]:
        envelope = self._envelope("model.stream", handle, tick, model=getattr(self.model, "name", None))

        async def _final(args: ModelInput) -> AsyncIterator[Any]:
            return self.model.stream(args)

        events = await handle.token.guard(self.interceptors.run("model.stream", model_input, envelope, _final))
        iterator = events.__aiter__()
        try:
            while True:
                has_more, event = await handle.token.guard(_next(iterator))
                if not has_more:
                    break
                yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _run_tools(
        self,
        output: ModelOutput,
        tools: dict[str, ToolDefinition],
        token: CancellationToken,
        results: list[ToolResult],
    ) -> AsyncIterator[Any]:
        """
        Execute the tick's tool calls, relaying confirmation events while
        they run. Results land in ``results`` in call order.
        """
        queue: asyncio.Queue = asyncio.Queue()

        def on_required(call: Any, message: str) -> None:
            queue.put_nowait(ToolConfirmationRequiredEvent(call=call, message=message))

        def on_result(call: Any, confirmed: bool) -> None:
            queue.put_nowait(ToolConfirmationResultEvent(call=call, confirmed=confirmed))

        provider_results = {
            block.tool_use_id: block
            for message in output.messages
            for block in message.content
            if block.type == "tool_result"
        }

        batch = asyncio.ensure_future(self.executor.execute_all(
            output.tool_calls,
            tools,
            provider_results=provider_results,
            on_confirmation_required=on_required,
            on_confirmation_result=on_result,
        ))
        getter: Optional[asyncio.Future] = None
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await token.guard(
                    asyncio.wait({batch, getter}, return_when=asyncio.FIRST_COMPLETED)
                )
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
            results.extend(batch.result())
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not batch.done():
                batch.cancel()
                await asyncio.gather(batch, return_exceptions=True)


async def _next(iterator: Any) -> tuple[bool, Any]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


def _coerce_output(value: Any) -> ModelOutput:
    if isinstance(value, ModelOutput):
        return value
    if isinstance(value, str):
        return ModelOutput(messages=[Message.assistant(value)], stop_reason=StopReason.STOP)
    if isinstance(value, Message):
        return ModelOutput(messages=[value], stop_reason=StopReason.STOP)
    return ModelOutput.model_validate(value)
