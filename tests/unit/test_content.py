"""
tests/unit/test_content.py - Content blocks, messages and user input

Run with:
    pytest tests/unit/test_content.py -v
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from aidk.content import (
    ImageBlock,
    StateChangeBlock,
    TextBlock,
    ToolResultBlock,
    dump_blocks,
    extract_text,
    parse_block,
    parse_blocks,
)
from aidk.content.messages import EntryKind, Event, Message, Role, TimelineEntry, UserInput


# ─────────────────────────────────────────────────────────────────────────────
# Blocks
# ─────────────────────────────────────────────────────────────────────────────


class TestBlocks:
    def test_parse_by_type(self):
        block = parse_block({"type": "image", "source": {"url": "https://x.io/a.png"}, "alt_text": "A"})
        assert isinstance(block, ImageBlock)
        assert block.source.type == "url"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_block({"type": "hologram"})

    def test_nested_tool_result_content(self):
        block = parse_block({
            "type": "tool_result",
            "tool_use_id": "c1",
            "name": "calc",
            "content": [{"type": "text", "text": "4"}],
        })
        assert isinstance(block, ToolResultBlock)
        assert isinstance(block.content[0], TextBlock)

    def test_state_change_wire_aliases(self):
        block = parse_block({"type": "state_change", "entity": "mode", "from": "chat", "to": "plan"})
        assert isinstance(block, StateChangeBlock)
        assert block.from_value == "chat"
        dumped = dump_blocks([block])[0]
        assert dumped["from"] == "chat"
        assert dumped["to"] == "plan"
        assert "from_value" not in dumped

    def test_dump_omits_none(self):
        assert dump_blocks([TextBlock(text="hi")]) == [{"type": "text", "text": "hi", "metadata": {}}]

    def test_parse_blocks_list(self):
        blocks = parse_blocks([{"type": "text", "text": "a"}, {"type": "code", "text": "x = 1"}])
        assert [b.type for b in blocks] == ["text", "code"]

    def test_extract_text(self):
        blocks = [TextBlock(text="a"), ImageBlock(source={"url": "u"}), TextBlock(text="b")]
        assert extract_text(blocks) == "a\nb"
        assert extract_text(blocks, separator=" ") == "a b"


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────


class TestMessages:
    def test_constructors(self):
        assert Message.user("hi").role == Role.USER
        assert Message.system("rules").role == Role.SYSTEM
        assert Message.assistant(None).content == []
        assert Message.of("tool", [TextBlock(text="x")]).role == Role.TOOL

    def test_mixed_content(self):
        message = Message.assistant(["text", {"type": "code", "text": "x = 1"}])
        assert [b.type for b in message.content] == ["text", "code"]
        assert message.text == "text\nx = 1"

    def test_ids_are_unique(self):
        assert Message.user("a").id != Message.user("a").id


class TestUserInput:
    def test_coerce_string(self):
        user_input = UserInput.coerce("Hello")
        assert [m.role for m in user_input.messages] == [Role.USER]
        assert user_input.text == "Hello"

    def test_coerce_none_and_list(self):
        assert UserInput.coerce(None).messages == ()
        user_input = UserInput.coerce(["a", Message.system("b")])
        assert [m.role for m in user_input.messages] == [Role.USER, Role.SYSTEM]

    def test_snapshot_is_detached(self):
        original = Message.user("Hello")
        user_input = UserInput.coerce(original)
        original.content.append(TextBlock(text="later edit"))
        assert user_input.text == "Hello"

    def test_frozen(self):
        user_input = UserInput.coerce("Hello")
        with pytest.raises(ValidationError):
            user_input.messages = ()


# ─────────────────────────────────────────────────────────────────────────────
# Timeline entries
# ─────────────────────────────────────────────────────────────────────────────


class TestTimelineEntry:
    def test_kind_must_match_payload(self):
        with pytest.raises(ValidationError):
            TimelineEntry(kind=EntryKind.MESSAGE, tick=1)

    def test_event_entry_role(self):
        entry = TimelineEntry.for_event(Event(content=[TextBlock(text="deployed")]), tick=2)
        assert entry.role == Role.EVENT
        assert entry.content[0].text == "deployed"

    def test_signature_ignores_ids(self):
        a = TimelineEntry.for_message(Message.user("same"), 1)
        b = TimelineEntry.for_message(Message.user("same"), 1)
        c = TimelineEntry.for_message(Message.user("same"), 2)
        assert a.signature() == b.signature()
        assert a.signature() != c.signature()

    def test_frozen(self):
        entry = TimelineEntry.for_message(Message.user("x"), 1)
        with pytest.raises(ValidationError):
            entry.tick = 5
