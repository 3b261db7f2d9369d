"""
aidk/renderers/base.py - Renderer contract and semantic node tree

The compiler lowers formatting primitives (strong, heading, list, ...) into
a SemanticNode tree; a Renderer turns that tree into text. The same tree
renders as markdown or XML depending on which renderer is in scope, and a
node can carry its own renderer to switch formats for its subtree.

Usage:
    node = SemanticNode(semantic="strong", children=[SemanticNode(text="hi")])
    MarkdownRenderer().format_node(node)      # "**hi**"
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from aidk.content.blocks import (
    EVENT_TYPES,
    StateChangeBlock,
    SystemEventBlock,
    TextBlock,
    UserActionBlock,
    is_block,
)
from aidk.observability.logger import get_logger

log = get_logger(__name__)

SEMANTIC_TYPES = frozenset({
    # inline
    "strong", "em", "mark", "underline", "strikethrough", "subscript",
    "superscript", "small", "code",
    # block
    "heading", "list", "list-item", "table", "paragraph", "blockquote",
    "line-break", "horizontal-rule", "preformatted",
    # media (lowercase html elements, rendered inline)
    "image", "audio", "video",
    # semantic elements
    "link", "quote", "citation", "keyboard", "variable",
    # unknown tags
    "custom",
})


@dataclass
class SemanticNode:
    """One node of formatted content: a text leaf or a formatted subtree."""
    text: Optional[str] = None
    semantic: Optional[str] = None
    props: dict[str, Any] = field(default_factory=dict)
    children: list["SemanticNode"] = field(default_factory=list)
    renderer: Optional["Renderer"] = None

    def plain_text(self) -> str:
        if self.children:
            return "".join(child.plain_text() for child in self.children)
        return self.text or ""


def _dump_value(value: Any) -> str:
    if value is None:
        return "undefined"
    return json.dumps(value, default=str, ensure_ascii=False)


class Renderer(ABC):
    """Turns semantic nodes and event blocks into text blocks."""

    name = "base"

    def format(self, items: list[Any]) -> list[Any]:
        """
        Format a mixed list of SemanticNodes and content blocks.

        Semantic trees become one text block each; event blocks are described
        in text; every other native block passes through unchanged.
        """
        formatted: list[Any] = []
        for item in items:
            if isinstance(item, SemanticNode):
                if item.semantic == "preformatted":
                    formatted.append(TextBlock(text=item.plain_text()))
                else:
                    formatted.append(TextBlock(text=self.format_node(item)))
            elif is_block(item) and item.type in EVENT_TYPES:
                formatted.extend(self.format_block(item))
            else:
                formatted.append(item)
        return formatted

    def format_node(self, node: SemanticNode) -> str:
        if node.renderer is not None:
            return node.renderer.format_node(SemanticNode(children=list(node.children)))

        if node.semantic == "list":
            return self.format_list(node)
        if node.semantic == "table":
            return self.format_table(node)
        if node.semantic == "preformatted":
            return node.plain_text()

        if node.children:
            content = "".join(self.format_node(child) for child in node.children)
        elif node.text is not None:
            content = self.escape(node.text)
        else:
            content = ""

        if node.semantic is None:
            return content
        return self.wrap(node, content)

    def escape(self, text: str) -> str:
        return text

    def list_item_text(self, item: SemanticNode) -> tuple[str, list[SemanticNode]]:
        """Split a list item into its own text and any nested lists."""
        if item.semantic != "list-item":
            return self.format_node(item), []
        nested = [c for c in item.children if c.semantic == "list"]
        body = [c for c in item.children if c.semantic != "list"]
        if body:
            text = "".join(self.format_node(c) for c in body)
        else:
            text = self.escape(item.text or "")
        return text.strip(), nested

    @staticmethod
    def list_items(node: SemanticNode) -> list[SemanticNode]:
        # Whitespace between items in source trees is not an item
        return [
            c for c in node.children
            if not (c.semantic is None and not c.children and not (c.text or "").strip())
        ]

    # ── Event text ────────────────────────────────────────────────────────────

    @staticmethod
    def describe_event(block: Any, *, default_actor: bool = True) -> str:
        text = getattr(block, "text", None)
        if text and text.strip():
            return text

        if isinstance(block, UserActionBlock):
            parts: list[str] = []
            actor = block.actor or ("User" if default_actor else None)
            if actor:
                parts.append("User" if actor.lower() == "user" else actor)
            if block.action:
                parts.append(block.action)
            if block.target:
                parts.append(f"on {block.target}")
            return " ".join(parts) if parts else "User action"

        if isinstance(block, SystemEventBlock):
            parts = []
            if block.event:
                parts.append(block.event)
            if block.source:
                parts.append(f"({block.source})")
            return " ".join(parts) if parts else "System event"

        if isinstance(block, StateChangeBlock):
            field_part = f".{block.field}" if block.field else ""
            return (
                f"{block.entity or 'entity'}{field_part}: "
                f"{_dump_value(block.from_value)} → {_dump_value(block.to_value)}"
            )

        return ""

    # ── Renderer-specific ─────────────────────────────────────────────────────

    @abstractmethod
    def wrap(self, node: SemanticNode, content: str) -> str:
        """Apply the node's semantic formatting to its rendered content."""

    @abstractmethod
    def format_list(self, node: SemanticNode) -> str: ...

    @abstractmethod
    def format_table(self, node: SemanticNode) -> str: ...

    @abstractmethod
    def format_block(self, block: Any) -> list[Any]:
        """Format a native content block (events, code, json) for the model."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"
