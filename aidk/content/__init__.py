"""
aidk/content - Content blocks and messages shared by every layer.
"""

from __future__ import annotations

from aidk.content.blocks import (
    EVENT_TYPES,
    MEDIA_TYPES,
    AudioBlock,
    BlockType,
    CodeBlock,
    ContentBlock,
    DocumentBlock,
    ImageBlock,
    JsonBlock,
    MediaSource,
    ReasoningBlock,
    StateChangeBlock,
    SystemEventBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserActionBlock,
    VideoBlock,
    dump_blocks,
    extract_text,
    parse_block,
    parse_blocks,
)
from aidk.content.messages import EntryKind, Event, Message, Role, TimelineEntry, UserInput

__all__ = [
    "EVENT_TYPES",
    "MEDIA_TYPES",
    "AudioBlock",
    "BlockType",
    "CodeBlock",
    "ContentBlock",
    "DocumentBlock",
    "ImageBlock",
    "JsonBlock",
    "MediaSource",
    "ReasoningBlock",
    "StateChangeBlock",
    "SystemEventBlock",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserActionBlock",
    "VideoBlock",
    "dump_blocks",
    "extract_text",
    "parse_block",
    "parse_blocks",
    "EntryKind",
    "Event",
    "Message",
    "Role",
    "TimelineEntry",
    "UserInput",
]
