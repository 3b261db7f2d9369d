"""
aidk/engine/process.py - Child executions as components

Fork and Spawn start a background execution the first time they render,
using the engine of the execution that is compiling them. The child is
cancelled if the component unmounts before it finishes, which includes
the parent execution ending.

    class Researcher(Component):
        def render(self, com, tick_state):
            return fragment(
                h(Fork, {
                    "input": "List three sources on the topic",
                    "root": SourceFinder,
                    "wait_until_complete": True,
                    "on_complete": lambda result: com.set_state("sources", result.text),
                }),
                section(f"Sources: {com.get_state('sources')}", id="sources"),
            )

Props (both):
  - input:               user input for the child
  - root:                the child's component tree; the engine's root by default
  - wait_until_complete: hold the parent's model call until the child is done
  - on_complete:         fn(result) once the child completes
  - on_error:            fn(error) once the child fails
Fork only:
  - inherit_timeline:    start the child with a copy of the parent's history
"""

from __future__ import annotations

from typing import Any, Optional

from aidk.compiler.component import Component
from aidk.context import ExecutionContext, require_context
from aidk.engine.handle import ExecutionHandle
from aidk.engine.result import ExecutionStatus
from aidk.exceptions import StateError
from aidk.observability.logger import get_logger

log = get_logger(__name__)


class _ChildExecution(Component):

    def __init__(self, props: Optional[dict[str, Any]] = None):
        super().__init__(props)
        self.handle: Optional[ExecutionHandle] = None

    def start(self, ctx: ExecutionContext) -> ExecutionHandle:
        raise NotImplementedError

    def render(self, com: Any, tick_state: Any) -> Any:
        if self.handle is None:
            ctx = require_context()
            if ctx.engine is None:
                raise StateError(f"{type(self).__name__} needs an engine-driven execution")
            self.handle = self.start(ctx)
            self.handle.add_done_callback(self._finished)
            if self.props.get("wait_until_complete"):
                com.wait_for(self.handle)
        return None

    def _finished(self, handle: ExecutionHandle) -> None:
        if handle.status == ExecutionStatus.COMPLETED:
            callback, value = self.props.get("on_complete"), handle.result
        else:
            callback, value = self.props.get("on_error"), handle.error
        if callback is not None:
            callback(value)

    async def on_unmount(self, com: Any) -> None:
        if self.handle is not None and not self.handle.done:
            log.info("process.cancel_on_unmount", pid=self.handle.pid, component=type(self).__name__)
            self.handle.cancel(f"{type(self).__name__} unmounted")


class Fork(_ChildExecution):
    """A child of the compiling execution, cancelled along with it."""

    def start(self, ctx: ExecutionContext) -> ExecutionHandle:
        return ctx.engine.fork(
            self.props.get("input"),
            root=self.props.get("root"),
            parent=ctx.handle,
            inherit_timeline=bool(self.props.get("inherit_timeline")),
        )


class Spawn(_ChildExecution):
    """An independent execution that shares only the thread and user."""

    def start(self, ctx: ExecutionContext) -> ExecutionHandle:
        return ctx.engine.spawn(
            self.props.get("input"),
            root=self.props.get("root"),
            thread_id=ctx.thread_id,
            user_id=ctx.user_id,
        )
