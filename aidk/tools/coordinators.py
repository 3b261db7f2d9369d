"""
aidk/tools/coordinators.py - Out-of-band waits for tool execution

Two things a tool call can wait on that come from outside the engine:

  ConfirmationCoordinator   a yes/no answer before a gated tool runs
  ClientToolCoordinator     the result of a tool executed by a client

Both key an asyncio.Future by tool_use_id. The engine announces the wait
(a stream event), the caller resolves it through the engine, and an
unanswered wait times out.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from aidk.content.blocks import TextBlock, parse_block
from aidk.observability.logger import get_logger
from aidk.tools.types import ToolCall, ToolResult, ToolVariant

log = get_logger(__name__)


class _FutureTable:

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future] = {}

    def register(self, tool_use_id: str) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[tool_use_id] = future
        return future

    def settle(self, tool_use_id: str, value: Any) -> bool:
        future = self._pending.pop(tool_use_id, None)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    def discard(self, tool_use_id: str) -> None:
        future = self._pending.pop(tool_use_id, None)
        if future is not None and not future.done():
            future.cancel()

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def cancel_all(self) -> None:
        for tool_use_id in list(self._pending):
            self.discard(tool_use_id)


class ConfirmationCoordinator:
    """
    Usage:
        approved = await coordinator.request(call.id, timeout=120.0)
        # elsewhere:
        coordinator.resolve(call.id, True)
    """

    def __init__(self) -> None:
        self._table = _FutureTable()

    async def request(self, tool_use_id: str, timeout: Optional[float]) -> bool:
        """Wait for an answer; no answer within ``timeout`` counts as denial."""
        future = self._table.register(tool_use_id)
        try:
            return bool(await asyncio.wait_for(future, timeout=timeout))
        except asyncio.TimeoutError:
            log.warning("confirmation.timeout", tool_use_id=tool_use_id, timeout=timeout)
            return False
        finally:
            self._table.discard(tool_use_id)

    def resolve(self, tool_use_id: str, confirmed: bool) -> bool:
        resolved = self._table.settle(tool_use_id, confirmed)
        log.info(
            "confirmation.resolved",
            tool_use_id=tool_use_id,
            confirmed=confirmed,
            matched=resolved,
        )
        return resolved

    @property
    def pending(self) -> list[str]:
        return self._table.pending_ids()

    def cancel_all(self) -> None:
        self._table.cancel_all()


class ClientToolCoordinator:
    """Holds client-executed tool calls until the client posts a result."""

    def __init__(self) -> None:
        self._table = _FutureTable()
        self._listeners: list[Callable[[ToolCall], Any]] = []

    def on_pending(self, listener: Callable[[ToolCall], Any]) -> Callable[[], None]:
        """listener(call) when a client tool starts waiting. Returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def wait_for_result(self, call: ToolCall) -> ToolResult:
        future = self._table.register(call.id)
        for listener in list(self._listeners):
            listener(call)
        try:
            content, is_error = await future
        finally:
            self._table.discard(call.id)
        return ToolResult(
            tool_use_id=call.id,
            name=call.name,
            content=content,
            is_error=is_error,
            executed_by=ToolVariant.CLIENT,
        )

    def resolve(self, tool_use_id: str, content: Any, is_error: bool = False) -> bool:
        """Deliver a client's result: a string, a block, or a list of blocks."""
        if isinstance(content, str):
            blocks = [TextBlock(text=content)]
        elif isinstance(content, (list, tuple)):
            blocks = [TextBlock(text=c) if isinstance(c, str) else parse_block(c) for c in content]
        else:
            blocks = [parse_block(content)]
        resolved = self._table.settle(tool_use_id, (blocks, is_error))
        log.info("client_tool.resolved", tool_use_id=tool_use_id, matched=resolved, is_error=is_error)
        return resolved

    @property
    def pending(self) -> list[str]:
        return self._table.pending_ids()

    def cancel_all(self) -> None:
        self._table.cancel_all()
