"""
aidk/engine/events.py - Stream events

Every event a run emits, as pydantic models discriminated on ``type``.
Within one tick the order is:

    tick_start
      message_start
        (content_start, content_delta*, content_end | content_block | tool_call)*
      message_end
      (tool_confirmation_required, tool_confirmation_result)*
      tool_result*
    tick_end

framed by execution_start and a terminal execution_end or error.

``parse_event`` turns wire dicts back into models; unknown types parse to
None so newer producers don't break older consumers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from aidk.content.blocks import ContentBlock
from aidk.engine.result import ExecutionResult
from aidk.model.types import ModelOutput, StopReason, Usage
from aidk.observability.logger import get_logger
from aidk.tools.types import ToolCall, ToolResult

log = get_logger(__name__)


class _Event(BaseModel):
    execution_id: Optional[str] = None
    tick: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────────────────────────────────────
# Execution / tick framing
# ─────────────────────────────────────────────────────────────────────────────


class ExecutionStartEvent(_Event):
    type: Literal["execution_start"] = "execution_start"


class TickStartEvent(_Event):
    type: Literal["tick_start"] = "tick_start"


class TickEndEvent(_Event):
    type: Literal["tick_end"] = "tick_end"
    response: Optional[ModelOutput] = None
    usage: Usage = Field(default_factory=Usage)


class ExecutionEndEvent(_Event):
    type: Literal["execution_end"] = "execution_end"
    result: ExecutionResult


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: dict[str, Any]
    result: Optional[ExecutionResult] = None


# ─────────────────────────────────────────────────────────────────────────────
# Model output
# ─────────────────────────────────────────────────────────────────────────────


class MessageStartEvent(_Event):
    type: Literal["message_start"] = "message_start"
    model: Optional[str] = None


class ContentStartEvent(_Event):
    type: Literal["content_start"] = "content_start"
    block_type: str = "text"
    block_index: int = 0


class ContentDeltaEvent(_Event):
    type: Literal["content_delta"] = "content_delta"
    block_type: str = "text"
    block_index: int = 0
    delta: str = ""


class ContentEndEvent(_Event):
    type: Literal["content_end"] = "content_end"
    block_type: str = "text"
    block_index: int = 0


class ContentBlockEvent(_Event):
    """A whole non-text block: media, code, json or a provider-run tool result."""
    type: Literal["content_block"] = "content_block"
    block_index: int = 0
    block: ContentBlock


class ToolCallEvent(_Event):
    type: Literal["tool_call"] = "tool_call"
    call: ToolCall
    block_index: Optional[int] = None


class MessageEndEvent(_Event):
    type: Literal["message_end"] = "message_end"
    stop_reason: StopReason = StopReason.UNSPECIFIED
    usage: Usage = Field(default_factory=Usage)


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────


class ToolConfirmationRequiredEvent(_Event):
    type: Literal["tool_confirmation_required"] = "tool_confirmation_required"
    call: ToolCall
    message: str


class ToolConfirmationResultEvent(_Event):
    type: Literal["tool_confirmation_result"] = "tool_confirmation_result"
    call: ToolCall
    confirmed: bool


class ToolResultEvent(_Event):
    type: Literal["tool_result"] = "tool_result"
    result: ToolResult


StreamEvent = Annotated[
    Union[
        ExecutionStartEvent,
        TickStartEvent,
        MessageStartEvent,
        ContentStartEvent,
        ContentDeltaEvent,
        ContentEndEvent,
        ContentBlockEvent,
        ToolCallEvent,
        MessageEndEvent,
        ToolConfirmationRequiredEvent,
        ToolConfirmationResultEvent,
        ToolResultEvent,
        TickEndEvent,
        ExecutionEndEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)

EVENT_TYPES = frozenset({
    "execution_start", "tick_start", "message_start", "content_start",
    "content_delta", "content_end", "content_block", "tool_call", "message_end",
    "tool_confirmation_required", "tool_confirmation_result", "tool_result",
    "tick_end", "execution_end", "error",
})

TERMINAL_EVENT_TYPES = frozenset({"execution_end", "error"})


def parse_event(data: Any) -> Optional[Any]:
    """Validate a wire dict into a StreamEvent; None for unknown types."""
    if isinstance(data, _Event):
        return data
    if not isinstance(data, dict):
        return None
    event_type = data.get("type")
    if event_type not in EVENT_TYPES:
        log.debug("events.unknown_type", type=event_type)
        return None
    return _event_adapter.validate_python(data)


def output_to_events(output: ModelOutput) -> list[Any]:
    """
    Replay a buffered ModelOutput as the events a streaming adapter would
    have produced for it. ``ModelAdapter.process_stream`` over the result
    gives back an equivalent output.
    """
    events: list[Any] = [MessageStartEvent(model=output.model)]
    message = output.message
    content = message.content if message is not None else []
    calls = {call.id: call for call in output.tool_calls}
    emitted: set[str] = set()

    for index, block in enumerate(content):
        if block.type in ("text", "reasoning"):
            events.append(ContentStartEvent(block_type=block.type, block_index=index))
            if block.text:
                events.append(ContentDeltaEvent(block_type=block.type, block_index=index, delta=block.text))
            events.append(ContentEndEvent(block_type=block.type, block_index=index))
        elif block.type == "tool_use" and block.tool_use_id in calls:
            emitted.add(block.tool_use_id)
            events.append(ToolCallEvent(call=calls[block.tool_use_id], block_index=index))
        else:
            events.append(ContentBlockEvent(block_index=index, block=block))

    index = len(content)
    for call in output.tool_calls:
        if call.id in emitted:
            continue
        events.append(ToolCallEvent(call=call, block_index=index))
        index += 1
    events.append(MessageEndEvent(stop_reason=output.stop_reason, usage=output.usage))
    return events


def is_terminal(event: Any) -> bool:
    return getattr(event, "type", None) in TERMINAL_EVENT_TYPES


def terminal_result(event: Any) -> Optional[ExecutionResult]:
    return getattr(event, "result", None)
