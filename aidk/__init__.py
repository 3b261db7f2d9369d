"""
aidk - Agent runtime: components compile to model input once per tick.

    from aidk import Engine, ScriptedModel, section

    def Assistant(props):
        return section("You are a helpful assistant.", id="role")

    result = await Engine(ScriptedModel(["Hi"]), Assistant).execute("Hello")
"""

from __future__ import annotations

__version__ = "0.1.0"

from aidk.exceptions import (
    AdapterError,
    AidkError,
    CancellationError,
    CompileError,
    ConfigError,
    ContextError,
    ToolExecutionError,
    ValidationError,
)
from aidk.content import Message, Role, UserInput
from aidk.model import ModelAdapter, ModelInput, ModelOutput, ScriptedModel, ScriptedTurn, StopReason, Usage
from aidk.tools import ToolCall, ToolDefinition, ToolExecutor, ToolRegistry, ToolResult, ToolVariant
from aidk.com import ContextObjectModel, TickState
from aidk.compiler import Component, Compiler, RecoveryAction, ephemeral, fragment, h, message, section, timeline, tool
from aidk.engine import Engine, ExecutionHandle, ExecutionResult, ExecutionStatus, Fork, Spawn, parse_event
from aidk.middleware import Envelope, InterceptorChain
from aidk.context import ExecutionContext, current_context

__all__ = [
    "__version__",
    "AdapterError",
    "AidkError",
    "CancellationError",
    "CompileError",
    "ConfigError",
    "ContextError",
    "ToolExecutionError",
    "ValidationError",
    "Message",
    "Role",
    "UserInput",
    "ModelAdapter",
    "ModelInput",
    "ModelOutput",
    "ScriptedModel",
    "ScriptedTurn",
    "StopReason",
    "Usage",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "ToolVariant",
    "ContextObjectModel",
    "TickState",
    "Component",
    "Compiler",
    "RecoveryAction",
    "ephemeral",
    "fragment",
    "h",
    "message",
    "section",
    "timeline",
    "tool",
    "Engine",
    "ExecutionHandle",
    "ExecutionResult",
    "ExecutionStatus",
    "Fork",
    "Spawn",
    "parse_event",
    "Envelope",
    "InterceptorChain",
    "ExecutionContext",
    "current_context",
]
