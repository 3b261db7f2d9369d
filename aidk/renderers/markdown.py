"""
aidk/renderers/markdown.py - Markdown renderer (the default)
"""

from __future__ import annotations

import json
from typing import Any

from aidk.content.blocks import CodeBlock, EVENT_TYPES, JsonBlock, TextBlock
from aidk.renderers.base import Renderer, SemanticNode

_INLINE = {
    "strong": "**{}**",
    "em": "*{}*",
    "code": "`{}`",
    "mark": "=={}==",
    "underline": "<u>{}</u>",
    "strikethrough": "~~{}~~",
    "subscript": "<sub>{}</sub>",
    "superscript": "<sup>{}</sup>",
    "small": "<small>{}</small>",
    "quote": '"{}"',
    "citation": "*{}*",
    "keyboard": "`{}`",
    "variable": "*{}*",
}


class MarkdownRenderer(Renderer):
    name = "markdown"

    def wrap(self, node: SemanticNode, content: str) -> str:
        semantic = node.semantic
        props = node.props

        if semantic in _INLINE:
            return _INLINE[semantic].format(content)

        if semantic == "heading":
            level = int(props.get("level") or 1)
            return f"{'#' * level} {content}"
        if semantic == "blockquote":
            return "\n".join(f"> {line}" for line in content.split("\n"))
        if semantic == "line-break":
            return "\n"
        if semantic == "horizontal-rule":
            return "\n---\n"

        if semantic == "image":
            return f"![{props.get('alt') or ''}]({props.get('src') or ''})"
        if semantic == "audio":
            return f"[Audio: {props.get('src') or ''}]"
        if semantic == "video":
            return f"[Video: {props.get('src') or ''}]"
        if semantic == "link":
            href = props.get("href") or ""
            return f"[{content}]({href})" if href else content

        # paragraph, list-item, custom: content as-is
        return content

    def format_list(self, node: SemanticNode, indent: int = 0) -> str:
        ordered = bool(node.props.get("ordered"))
        task = bool(node.props.get("task"))
        prefix = "  " * indent
        lines: list[str] = []

        for index, item in enumerate(self.list_items(node), start=1):
            text, nested = self.list_item_text(item)
            bullet = f"{index}." if ordered else "-"
            if task:
                mark = "x" if item.props.get("checked") else " "
                bullet = f"{bullet} [{mark}]"
            lines.append(f"{prefix}{bullet} {text}")
            for child in nested:
                lines.append(self.format_list(child, indent + 1))

        return "\n".join(lines)

    def format_table(self, node: SemanticNode) -> str:
        headers = [str(h if h is not None else "") for h in node.props.get("headers") or []]
        rows = [
            [str(c if c is not None else "") for c in row]
            for row in node.props.get("rows") or []
        ]
        alignments = node.props.get("alignments") or []

        widths: list[int] = []
        for row in ([headers] if headers else []) + rows:
            for i, cell in enumerate(row):
                if i >= len(widths):
                    widths.append(3)
                widths[i] = max(widths[i], len(cell))

        lines: list[str] = []
        if headers:
            lines.append("| " + " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)) + " |")
            separators = []
            for i in range(len(headers)):
                width = widths[i]
                align = alignments[i] if i < len(alignments) else "left"
                if align == "center":
                    separators.append(":" + "-" * (width - 2) + ":")
                elif align == "right":
                    separators.append("-" * (width - 1) + ":")
                else:
                    separators.append("-" * width)
            lines.append("| " + " | ".join(separators) + " |")

        for row in rows:
            cells = [
                cell.ljust(widths[i] if i < len(widths) else 3)
                for i, cell in enumerate(row)
            ]
            lines.append("| " + " | ".join(cells) + " |")

        return "\n".join(lines)

    def format_block(self, block: Any) -> list[Any]:
        if isinstance(block, CodeBlock):
            return [TextBlock(text=f"```{block.language}\n{block.text}\n```")]
        if isinstance(block, JsonBlock):
            text = block.text or json.dumps(block.data if block.data is not None else {}, indent=2)
            return [TextBlock(text=f"```json\n{text}\n```")]
        if block.type in EVENT_TYPES:
            return [TextBlock(text=self.describe_event(block))]
        return [block]
