"""
aidk/model/types.py - Model boundary data models

Provider-independent request/response shapes. Adapters translate
ModelInput into their provider's request and the provider's response
back into ModelOutput.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from aidk.content.blocks import extract_text
from aidk.content.messages import Message, Role
from aidk.tools.types import ToolCall, ToolSpec


class StopReason(str, Enum):
    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT_FILTER = "content_filter"
    TOOL_USE = "tool_use"
    FUNCTION_CALL = "function_call"
    UNSPECIFIED = "unspecified"
    OTHER = "other"
    PAUSED = "paused"
    FORMAT_ERROR = "format_error"
    EMPTY_RESPONSE = "empty_response"
    NO_CONTENT = "no_content"
    EXPLICIT_COMPLETION = "explicit_completion"
    NATURAL_COMPLETION = "natural_completion"
    ERROR = "error"
    # Set by the engine, never by a provider
    MAX_TICKS_REACHED = "max_ticks_reached"
    CANCELLED = "cancelled"

    @classmethod
    def coerce(cls, value: Any) -> "StopReason":
        """Map a provider's stop string onto the enum; unknown values become OTHER."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNSPECIFIED
        try:
            return cls(str(value))
        except ValueError:
            return cls.OTHER


# Stop reasons that end the execution even when tool calls are present
TERMINAL_STOP_REASONS = frozenset({
    StopReason.CONTENT_FILTER,
    StopReason.ERROR,
    StopReason.EXPLICIT_COMPLETION,
    StopReason.PAUSED,
})


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
        )


class ModelInput(BaseModel):
    """Everything one model call needs."""
    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolSpec] = Field(default_factory=list)
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def system(self) -> str:
        return "\n\n".join(m.text for m in self.messages if m.role == Role.SYSTEM)


class ModelOutput(BaseModel):
    """A normalized provider response."""
    messages: list[Message] = Field(default_factory=list)
    stop_reason: StopReason = StopReason.UNSPECIFIED
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: Optional[str] = None
    raw: Any = Field(default=None, exclude=True)

    @property
    def message(self) -> Optional[Message]:
        """The last assistant message, if any."""
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None

    @property
    def text(self) -> str:
        message = self.message
        if message is None:
            return ""
        return extract_text([b for b in message.content if b.type == "text"])
