"""
aidk/content/messages.py - Messages, Timeline Entries and User Input

Message is the unit the timeline stores and the model consumes.
TimelineEntry wraps a message or an event with the tick that produced it;
entries are frozen once created.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from aidk.content.blocks import ContentBlock, TextBlock, extract_text, parse_block
from aidk.utils import short_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    EVENT = "event"


class EntryKind(str, Enum):
    MESSAGE = "message"
    EVENT = "event"


# ─────────────────────────────────────────────────────────────────────────────
# Message
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single conversational message made of content blocks."""
    id: str = Field(default_factory=lambda: short_id("msg"))
    role: Role
    content: list[ContentBlock] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return extract_text(self.content)

    @classmethod
    def of(cls, role: Role | str, content: Any, **kwargs: Any) -> "Message":
        """Build a message from a string, a block, or a list of blocks/dicts."""
        return cls(role=Role(role), content=_coerce_content(content), **kwargs)

    @classmethod
    def system(cls, content: Any, **kwargs: Any) -> "Message":
        return cls.of(Role.SYSTEM, content, **kwargs)

    @classmethod
    def user(cls, content: Any, **kwargs: Any) -> "Message":
        return cls.of(Role.USER, content, **kwargs)

    @classmethod
    def assistant(cls, content: Any, **kwargs: Any) -> "Message":
        return cls.of(Role.ASSISTANT, content, **kwargs)

    @classmethod
    def tool(cls, content: Any, **kwargs: Any) -> "Message":
        return cls.of(Role.TOOL, content, **kwargs)


def _coerce_content(content: Any) -> list[Any]:
    if content is None:
        return []
    if isinstance(content, str):
        return [TextBlock(text=content)]
    if isinstance(content, (list, tuple)):
        return [TextBlock(text=c) if isinstance(c, str) else parse_block(c) for c in content]
    return [parse_block(content)]


# ─────────────────────────────────────────────────────────────────────────────
# Timeline entries
# ─────────────────────────────────────────────────────────────────────────────


class Event(BaseModel):
    """A non-conversational occurrence: user action, system event, or state change."""
    id: str = Field(default_factory=lambda: short_id("evt"))
    content: list[ContentBlock] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TimelineEntry(BaseModel):
    """One immutable record in the execution timeline."""
    model_config = ConfigDict(frozen=True)

    kind: EntryKind
    tick: int
    message: Optional[Message] = None
    event: Optional[Event] = None

    @model_validator(mode="after")
    def _payload_matches_kind(self) -> "TimelineEntry":
        if self.kind == EntryKind.MESSAGE and self.message is None:
            raise ValueError("message entries require a message")
        if self.kind == EntryKind.EVENT and self.event is None:
            raise ValueError("event entries require an event")
        return self

    @property
    def content(self) -> list[Any]:
        return self.message.content if self.message is not None else self.event.content

    @property
    def role(self) -> Role:
        return self.message.role if self.message is not None else Role.EVENT

    @classmethod
    def for_message(cls, message: Message, tick: int) -> "TimelineEntry":
        return cls(kind=EntryKind.MESSAGE, tick=tick, message=message)

    @classmethod
    def for_event(cls, event: Event, tick: int) -> "TimelineEntry":
        return cls(kind=EntryKind.EVENT, tick=tick, event=event)

    def signature(self) -> tuple:
        """Content identity (kind, role, blocks, tick) ignoring ids and timestamps."""
        blocks = json.dumps(
            [b.model_dump(mode="json", exclude={"id"}) for b in self.content],
            sort_keys=True,
        )
        return (self.kind.value, self.role.value, blocks, self.tick)


# ─────────────────────────────────────────────────────────────────────────────
# User input
# ─────────────────────────────────────────────────────────────────────────────


class UserInput(BaseModel):
    """Immutable snapshot of what the caller submitted at execution start."""
    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n".join(m.text for m in self.messages if m.text)

    @classmethod
    def coerce(cls, value: Any) -> "UserInput":
        """
        Accept a string, a Message, a list of messages/strings, or a UserInput.
        Strings become user-role messages.
        """
        if isinstance(value, UserInput):
            return value
        if value is None:
            return cls()
        if isinstance(value, (str, Message)):
            value = [value]
        messages = tuple(
            Message.user(item) if isinstance(item, str) else item
            for item in value
        )
        return cls(messages=tuple(m.model_copy(deep=True) for m in messages))
