"""
aidk/content/blocks.py - Content Block Models

Every piece of content exchanged with a model is a ContentBlock: a pydantic
model discriminated on its ``type`` field. Messages, tool results and
compiled structures all carry lists of blocks.

Usage:
    from aidk.content.blocks import TextBlock, parse_block, extract_text

    block = parse_block({"type": "text", "text": "Hello"})
    extract_text([block, TextBlock(text="world")], separator=" ")   # "Hello world"
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class BlockType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    REASONING = "reasoning"
    CODE = "code"
    JSON = "json"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    USER_ACTION = "user_action"
    SYSTEM_EVENT = "system_event"
    STATE_CHANGE = "state_change"


MEDIA_TYPES = frozenset({"image", "audio", "video", "document"})
EVENT_TYPES = frozenset({"user_action", "system_event", "state_change"})


# ─────────────────────────────────────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────────────────────────────────────


class _Block(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MediaSource(BaseModel):
    """Where a media block's bytes live: a URL or inline base64 data."""
    type: Literal["url", "base64"] = "url"
    url: Optional[str] = None
    data: Optional[str] = None
    media_type: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Block variants
# ─────────────────────────────────────────────────────────────────────────────


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str


class ImageBlock(_Block):
    type: Literal["image"] = "image"
    source: MediaSource
    alt_text: Optional[str] = None


class AudioBlock(_Block):
    type: Literal["audio"] = "audio"
    source: MediaSource
    transcript: Optional[str] = None


class VideoBlock(_Block):
    type: Literal["video"] = "video"
    source: MediaSource
    transcript: Optional[str] = None


class DocumentBlock(_Block):
    type: Literal["document"] = "document"
    source: MediaSource
    title: Optional[str] = None


class ReasoningBlock(_Block):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""
    signature: Optional[str] = None
    is_redacted: bool = False


class CodeBlock(_Block):
    type: Literal["code"] = "code"
    text: str
    language: str = ""


class JsonBlock(_Block):
    type: Literal["json"] = "json"
    text: str = ""
    data: Any = None


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    tool_use_id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    name: str
    content: list["ContentBlock"] = Field(default_factory=list)
    is_error: bool = False
    executed_by: Optional[str] = None


class UserActionBlock(_Block):
    type: Literal["user_action"] = "user_action"
    action: str
    actor: Optional[str] = None
    target: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    text: Optional[str] = None


class SystemEventBlock(_Block):
    type: Literal["system_event"] = "system_event"
    event: str
    source: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    text: Optional[str] = None


class StateChangeBlock(_Block):
    type: Literal["state_change"] = "state_change"
    entity: str
    field: Optional[str] = None
    from_value: Any = Field(default=None, alias="from")
    to_value: Any = Field(default=None, alias="to")
    trigger: Optional[str] = None
    text: Optional[str] = None


ContentBlock = Annotated[
    Union[
        TextBlock,
        ImageBlock,
        AudioBlock,
        VideoBlock,
        DocumentBlock,
        ReasoningBlock,
        CodeBlock,
        JsonBlock,
        ToolUseBlock,
        ToolResultBlock,
        UserActionBlock,
        SystemEventBlock,
        StateChangeBlock,
    ],
    Field(discriminator="type"),
]

ToolResultBlock.model_rebuild()

_block_adapter: TypeAdapter = TypeAdapter(ContentBlock)
_block_list_adapter: TypeAdapter = TypeAdapter(list[ContentBlock])


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def parse_block(data: Any) -> Any:
    """Validate a dict (or block) into the matching ContentBlock model."""
    if isinstance(data, _Block):
        return data
    return _block_adapter.validate_python(data)


def parse_blocks(data: list[Any]) -> list[Any]:
    return _block_list_adapter.validate_python(data)


def dump_blocks(blocks: list[Any]) -> list[dict[str, Any]]:
    """Serialize blocks to plain dicts using wire aliases (``from``/``to``)."""
    return [b.model_dump(mode="json", by_alias=True, exclude_none=True) for b in blocks]


def extract_text(blocks: list[Any], separator: str = "\n") -> str:
    """Concatenate the text carried by text-like blocks."""
    parts: list[str] = []
    for block in blocks:
        text = getattr(block, "text", None)
        if isinstance(text, str) and text:
            parts.append(text)
    return separator.join(parts)


def is_block(value: Any) -> bool:
    return isinstance(value, _Block)
