"""
aidk/renderers/xml.py - XML renderer

Same semantic tree as the markdown renderer, emitted as HTML-flavoured XML.
All text and attribute values are escaped.
"""

from __future__ import annotations

import json
from typing import Any

from aidk.content.blocks import (
    CodeBlock,
    ImageBlock,
    JsonBlock,
    StateChangeBlock,
    SystemEventBlock,
    TextBlock,
    UserActionBlock,
)
from aidk.renderers.base import Renderer, SemanticNode

_TAGS = {
    "strong": "strong",
    "em": "em",
    "code": "code",
    "mark": "mark",
    "underline": "u",
    "strikethrough": "s",
    "subscript": "sub",
    "superscript": "sup",
    "small": "small",
    "paragraph": "p",
    "blockquote": "blockquote",
    "quote": "q",
    "citation": "cite",
    "keyboard": "kbd",
    "variable": "var",
}


def escape_xml(text: Any) -> str:
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _attrs(**values: Any) -> str:
    return "".join(f' {k}="{escape_xml(v)}"' for k, v in values.items() if v)


class XMLRenderer(Renderer):
    name = "xml"

    def escape(self, text: str) -> str:
        return escape_xml(text)

    def wrap(self, node: SemanticNode, content: str) -> str:
        semantic = node.semantic
        props = node.props

        if semantic in _TAGS:
            tag = _TAGS[semantic]
            return f"<{tag}>{content}</{tag}>"

        if semantic == "heading":
            level = int(props.get("level") or 1)
            return f"<h{level}>{content}</h{level}>"
        if semantic == "line-break":
            return "<br/>"
        if semantic == "horizontal-rule":
            return "<hr/>"

        if semantic == "image":
            return (
                f'<img src="{escape_xml(props.get("src") or "")}" '
                f'alt="{escape_xml(props.get("alt") or "")}" />'
            )
        if semantic in ("audio", "video"):
            return f'<{semantic} src="{escape_xml(props.get("src") or "")}" />'
        if semantic == "link":
            href = props.get("href") or ""
            return f'<a href="{escape_xml(href)}">{content}</a>' if href else content

        if semantic == "custom":
            tag = props.get("_tagName") or props.get("rendererTag") or "span"
            return f"<{tag}>{content}</{tag}>"

        return content

    def format_list(self, node: SemanticNode) -> str:
        tag = "ol" if node.props.get("ordered") else "ul"
        task = bool(node.props.get("task"))
        lines = [f'<{tag} class="task-list">' if task else f"<{tag}>"]

        for item in self.list_items(node):
            text, nested = self.list_item_text(item)
            if task:
                checked = " checked" if item.props.get("checked") else ""
                body = f'<input type="checkbox"{checked} disabled />{text}'
                li = '<li class="task-list-item">'
            else:
                body = text
                li = "<li>"
            for child in nested:
                body += "\n" + self.format_list(child)
            lines.append(f"  {li}{body}</li>")

        lines.append(f"</{tag}>")
        return "\n".join(lines)

    def format_table(self, node: SemanticNode) -> str:
        headers = node.props.get("headers") or []
        rows = node.props.get("rows") or []
        alignments = node.props.get("alignments") or []

        def style(i: int) -> str:
            align = alignments[i] if i < len(alignments) else None
            return f' style="text-align: {align}"' if align and align != "left" else ""

        lines = ["<table>"]
        if headers:
            lines += ["  <thead>", "    <tr>"]
            lines += [f"      <th{style(i)}>{escape_xml(h)}</th>" for i, h in enumerate(headers)]
            lines += ["    </tr>", "  </thead>"]
        if rows:
            lines.append("  <tbody>")
            for row in rows:
                lines.append("    <tr>")
                lines += [f"      <td{style(i)}>{escape_xml(c)}</td>" for i, c in enumerate(row)]
                lines.append("    </tr>")
            lines.append("  </tbody>")
        lines.append("</table>")
        return "\n".join(lines)

    def format_block(self, block: Any) -> list[Any]:
        if isinstance(block, CodeBlock):
            lang = f' class="language-{escape_xml(block.language)}"' if block.language else ""
            return [TextBlock(text=f"<pre><code{lang}>{escape_xml(block.text)}</code></pre>")]
        if isinstance(block, JsonBlock):
            text = block.text or json.dumps(block.data if block.data is not None else {}, indent=2)
            return [TextBlock(text=f'<pre><code class="language-json">{escape_xml(text)}</code></pre>')]
        if isinstance(block, ImageBlock):
            url = block.source.url or ""
            return [TextBlock(text=f'<img src="{escape_xml(url)}" alt="{escape_xml(block.alt_text or "")}"/>')]

        if isinstance(block, UserActionBlock):
            text = self.describe_event(block, default_actor=False)
            attrs = _attrs(actor=block.actor, action=block.action, target=block.target)
            return [TextBlock(text=f"<user-action{attrs}>{escape_xml(text)}</user-action>")]
        if isinstance(block, SystemEventBlock):
            text = self.describe_event(block)
            attrs = _attrs(source=block.source, event=block.event)
            return [TextBlock(text=f"<system-event{attrs}>{escape_xml(text)}</system-event>")]
        if isinstance(block, StateChangeBlock):
            text = self.describe_event(block)
            attrs = _attrs(entity=block.entity, field=block.field)
            return [TextBlock(text=f"<state-change{attrs}>{escape_xml(text)}</state-change>")]

        return [block]
