"""
aidk/engine - Tick loop, execution handles, stream events and persistence hooks.
"""

from __future__ import annotations

from aidk.engine.result import ExecutionResult, ExecutionStatus
from aidk.engine.events import (
    EVENT_TYPES,
    TERMINAL_EVENT_TYPES,
    ContentBlockEvent,
    ContentDeltaEvent,
    ContentEndEvent,
    ContentStartEvent,
    ErrorEvent,
    ExecutionEndEvent,
    ExecutionStartEvent,
    MessageEndEvent,
    MessageStartEvent,
    StreamEvent,
    TickEndEvent,
    TickStartEvent,
    ToolCallEvent,
    ToolConfirmationRequiredEvent,
    ToolConfirmationResultEvent,
    ToolResultEvent,
    is_terminal,
    output_to_events,
    parse_event,
    terminal_result,
)
from aidk.engine.stream import EventStream
from aidk.engine.handle import CancellationToken, ExecutionHandle
from aidk.engine.graph import ExecutionGraph
from aidk.engine.engine import DEFAULT_MAX_TICKS, Engine
from aidk.engine.process import Fork, Spawn
from aidk.engine.persistence import (
    ExecutionRecord,
    ExecutionStore,
    InMemoryExecutionStore,
    MessageRecord,
    MetricsRecord,
    create_persistence_interceptors,
    install_persistence,
)

__all__ = [
    "ExecutionResult",
    "ExecutionStatus",
    "EVENT_TYPES",
    "TERMINAL_EVENT_TYPES",
    "ContentBlockEvent",
    "ContentDeltaEvent",
    "ContentEndEvent",
    "ContentStartEvent",
    "ErrorEvent",
    "ExecutionEndEvent",
    "ExecutionStartEvent",
    "MessageEndEvent",
    "MessageStartEvent",
    "StreamEvent",
    "TickEndEvent",
    "TickStartEvent",
    "ToolCallEvent",
    "ToolConfirmationRequiredEvent",
    "ToolConfirmationResultEvent",
    "ToolResultEvent",
    "is_terminal",
    "output_to_events",
    "parse_event",
    "terminal_result",
    "EventStream",
    "CancellationToken",
    "ExecutionHandle",
    "DEFAULT_MAX_TICKS",
    "Engine",
    "ExecutionGraph",
    "Fork",
    "Spawn",
    "ExecutionRecord",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "MessageRecord",
    "MetricsRecord",
    "create_persistence_interceptors",
    "install_persistence",
]
