"""
aidk/tools/types.py - Tool System Data Models

Shared types used across the tool registry, executor, routers and the
engine's tool phase.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from aidk.content.blocks import ContentBlock, TextBlock, ToolResultBlock, ToolUseBlock, extract_text
from aidk.utils import short_id

DENIED_MESSAGE = "Tool execution was denied by user."


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class ToolVariant(str, Enum):
    """Where a tool call is executed."""
    SERVER = "server"       # in-process async handler
    CLIENT = "client"       # forwarded to a connected client
    PROVIDER = "provider"   # already executed by the model provider
    ROUTED = "routed"       # forwarded to an external tool server


class ToolErrorType(str, Enum):
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_NO_HANDLER = "TOOL_NO_HANDLER"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    DENIED = "DENIED"
    TIMEOUT = "TIMEOUT"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    NO_PROVIDER_RESULT = "NO_PROVIDER_RESULT"
    NO_ROUTER = "NO_ROUTER"
    NO_CLIENT = "NO_CLIENT"
    ROUTER_ERROR = "ROUTER_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Tool definitions
# ─────────────────────────────────────────────────────────────────────────────


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class ToolSpec(BaseModel):
    """What the model is told about a tool."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=_empty_schema)


class ToolDefinition(BaseModel):
    """
    Full metadata and behaviour of one tool.

    ``requires_confirmation`` may be a bool or a callable taking the call's
    input and returning a bool (sync or async).
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=_empty_schema)
    variant: ToolVariant = ToolVariant.SERVER
    handler: Optional[Callable[..., Any]] = Field(default=None, exclude=True)
    requires_confirmation: Union[bool, Callable[..., Any]] = Field(default=False, exclude=True)
    confirmation_message: Optional[str] = None
    requires_response: bool = False      # client tools: wait for the client's result
    default_result: Optional[str] = None  # client tools that don't wait
    route: Optional[str] = None          # routed tools: router name
    timeout_seconds: Optional[float] = None
    category: str = "general"
    enabled: bool = True

    def to_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)


# ─────────────────────────────────────────────────────────────────────────────
# Runtime call / result types
# ─────────────────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str = Field(default_factory=lambda: short_id("call"))
    name: str
    input: dict[str, Any] = Field(default_factory=dict)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(tool_use_id=self.id, name=self.name, input=dict(self.input))

    @classmethod
    def from_block(cls, block: ToolUseBlock) -> "ToolCall":
        return cls(id=block.tool_use_id, name=block.name, input=dict(block.input))


class ToolResult(BaseModel):
    """The outcome of one tool call. Failures are results too, never exceptions."""
    tool_use_id: str
    name: str
    content: list[ContentBlock] = Field(default_factory=list)
    is_error: bool = False
    error_type: Optional[str] = None
    executed_by: Optional[ToolVariant] = None
    duration_ms: float = 0.0

    @property
    def text(self) -> str:
        return extract_text(self.content)

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(
            tool_use_id=self.tool_use_id,
            name=self.name,
            content=list(self.content),
            is_error=self.is_error,
            executed_by=self.executed_by.value if self.executed_by else None,
        )

    @classmethod
    def success(
        cls,
        tool_use_id: str,
        name: str,
        content: list[Any],
        executed_by: ToolVariant = ToolVariant.SERVER,
        duration_ms: float = 0.0,
    ) -> "ToolResult":
        return cls(
            tool_use_id=tool_use_id,
            name=name,
            content=content,
            is_error=False,
            executed_by=executed_by,
            duration_ms=duration_ms,
        )

    @classmethod
    def error(
        cls,
        tool_use_id: str,
        name: str,
        error_message: str,
        error_type: str = ToolErrorType.EXECUTION_ERROR.value,
        executed_by: Optional[ToolVariant] = None,
    ) -> "ToolResult":
        return cls(
            tool_use_id=tool_use_id,
            name=name,
            content=[TextBlock(text=f"Error: {error_message}")],
            is_error=True,
            error_type=error_type,
            executed_by=executed_by,
        )

    @classmethod
    def denied(cls, tool_use_id: str, name: str) -> "ToolResult":
        return cls(
            tool_use_id=tool_use_id,
            name=name,
            content=[TextBlock(text=DENIED_MESSAGE)],
            is_error=True,
            error_type=ToolErrorType.DENIED.value,
        )
