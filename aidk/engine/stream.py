"""
aidk/engine/stream.py - Push-based event stream

The producer (a spawned execution) pushes events; any number of awaits
on ``result()`` resolve when the terminal event arrives, and a single
consumer iterates the events.

Usage:
    handle = engine.spawn("Hello")
    async for event in handle.events:
        print(event.type)
    result = await handle.events.result()
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Generic, Optional, TypeVar

EventT = TypeVar("EventT")
ResultT = TypeVar("ResultT")


class EventStream(Generic[EventT, ResultT], AsyncIterator[EventT]):
    """A push-based async event stream with terminal result extraction."""

    def __init__(
        self,
        is_terminal_event: Callable[[EventT], bool],
        terminal_result: Callable[[EventT], Optional[ResultT]],
    ) -> None:
        self._is_terminal_event = is_terminal_event
        self._terminal_result = terminal_result
        self._queue: asyncio.Queue[Optional[EventT]] = asyncio.Queue()
        self._result_future: asyncio.Future[Optional[ResultT]] = asyncio.get_running_loop().create_future()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: EventT) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

        if self._is_terminal_event(event):
            if not self._result_future.done():
                self._result_future.set_result(self._terminal_result(event))
            self._closed = True
            self._queue.put_nowait(None)

    def end(self, result: Optional[ResultT] = None, error: Optional[BaseException] = None) -> None:
        """Close without a terminal event (the producer died or was cancelled)."""
        if self._closed:
            return
        self._closed = True
        if not self._result_future.done():
            if result is not None:
                self._result_future.set_result(result)
            else:
                self._result_future.set_exception(
                    error or RuntimeError("Event stream ended before terminal event")
                )
                # Mark retrieved so an unawaited failure doesn't warn at GC
                self._result_future.exception()
        self._queue.put_nowait(None)

    async def result(self) -> Optional[ResultT]:
        return await self._result_future

    def __aiter__(self) -> "EventStream[EventT, ResultT]":
        return self

    async def __anext__(self) -> EventT:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item
