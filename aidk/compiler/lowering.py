"""
aidk/compiler/lowering.py - Primitive content → semantic nodes and blocks

Content children of a section, message or ephemeral are lowered bottom-up
into a flat list of:

  SemanticNode   formatted text (strong, heading, list, table, ...) that
                 the active renderer turns into one text block
  ContentBlock   native blocks (image, code, json, tool_use, events, ...)
                 that pass through unchanged

Adjacent inline content (plain strings and inline marks) is grouped into
one SemanticNode so "Hello " + <strong>world</strong> stays one text block.
Unknown tags never raise: they are logged and degrade to a custom node
(with children) or to their props as JSON text.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional

from aidk.compiler.nodes import FRAGMENT, PrimitiveNode, is_node
from aidk.content.blocks import (
    AudioBlock,
    CodeBlock,
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
    is_block,
    parse_blocks,
)
from aidk.observability.logger import get_logger
from aidk.renderers.base import SemanticNode

log = get_logger(__name__)

# tag → semantic type
_SEMANTIC_TAGS: dict[str, str] = {
    "b": "strong", "strong": "strong",
    "i": "em", "em": "em",
    "mark": "mark",
    "u": "underline", "underline": "underline",
    "s": "strikethrough", "del": "strikethrough", "strikethrough": "strikethrough",
    "sub": "subscript", "subscript": "subscript",
    "sup": "superscript", "superscript": "superscript",
    "small": "small",
    "code": "code",
    "heading": "heading",
    "p": "paragraph", "paragraph": "paragraph",
    "blockquote": "blockquote",
    "ul": "list", "ol": "list", "list": "list",
    "li": "list-item", "list-item": "list-item",
    "table": "table",
    "img": "image", "image": "image",
    "audio": "audio",
    "video": "video",
    "a": "link", "link": "link",
    "q": "quote", "quote": "quote",
    "cite": "citation", "citation": "citation",
    "kbd": "keyboard", "keyboard": "keyboard",
    "var": "variable", "variable": "variable",
    "pre": "preformatted", "preformatted": "preformatted",
    "br": "line-break", "line-break": "line-break",
    "hr": "horizontal-rule", "horizontal-rule": "horizontal-rule",
}
for _level in range(1, 7):
    _SEMANTIC_TAGS[f"h{_level}"] = "heading"

BLOCK_SEMANTICS = frozenset({
    "heading", "list", "table", "paragraph", "blockquote", "preformatted", "horizontal-rule",
})

# Tags the structure collector handles itself; they never reach lowering
STRUCTURAL_TAGS = frozenset({"section", "message", "tool", "ephemeral", "timeline", "renderer"})

RendererResolver = Callable[[Any], Any]


def lower_content(children: list[Any], resolve_renderer: Optional[RendererResolver] = None) -> list[Any]:
    """Lower resolved content children into SemanticNodes and native blocks."""
    items: list[Any] = []
    inline: list[SemanticNode] = []

    def flush() -> None:
        if inline:
            items.append(inline[0] if len(inline) == 1 else SemanticNode(children=list(inline)))
            inline.clear()

    for item in _lower_all(children, resolve_renderer):
        if isinstance(item, SemanticNode) and item.semantic not in BLOCK_SEMANTICS and item.renderer is None:
            inline.append(item)
        else:
            flush()
            items.append(item)
    flush()
    return [i for i in items if not _is_blank(i)]


def _is_blank(item: Any) -> bool:
    return (
        isinstance(item, SemanticNode)
        and item.semantic is None
        and item.renderer is None
        and not item.plain_text().strip()
    )


def _lower_all(children: list[Any], resolve_renderer: Optional[RendererResolver]) -> list[Any]:
    out: list[Any] = []
    for child in children:
        out.extend(_lower(child, resolve_renderer))
    return out


def _lower(child: Any, resolve_renderer: Optional[RendererResolver]) -> list[Any]:
    if isinstance(child, str):
        return [SemanticNode(text=child)]
    if isinstance(child, SemanticNode) or is_block(child):
        return [child]
    if not isinstance(child, PrimitiveNode):
        if is_node(child):
            # Composites are rendered away before lowering
            raise TypeError(f"Unrendered component in content: {child!r}")
        return [SemanticNode(text=str(child))]

    tag = child.type
    props = child.props

    if tag == FRAGMENT:
        return _lower_all(child.children, resolve_renderer)

    if tag == "text":
        return [SemanticNode(text=str(props.get("text", "")))] + _lower_all(child.children, resolve_renderer)

    if tag == "renderer":
        target = props.get("renderer")
        resolved = resolve_renderer(target) if resolve_renderer is not None else target
        inner = _lower_all(child.children, resolve_renderer)
        nodes = [i for i in inner if isinstance(i, SemanticNode)]
        blocks = [i for i in inner if not isinstance(i, SemanticNode)]
        lowered: list[Any] = []
        if nodes:
            lowered.append(SemanticNode(children=nodes, renderer=resolved))
        # Event blocks inside the scope are described by the scoped renderer
        for block in blocks:
            lowered.extend(resolved.format([block]) if resolved is not None else [block])
        return lowered

    native = _native_block(child)
    if native is not None:
        return [native]

    semantic = _SEMANTIC_TAGS.get(tag)
    if semantic is not None:
        return [_semantic(child, semantic, resolve_renderer)]

    if tag in STRUCTURAL_TAGS:
        log.warning("compiler.misplaced_node", tag=tag)
        return _lower_all(child.children, resolve_renderer)

    log.warning("compiler.unknown_node", tag=tag)
    if child.children:
        return [SemanticNode(
            semantic="custom",
            props={"_tagName": tag, **props},
            children=[n for n in _lower_all(child.children, resolve_renderer) if isinstance(n, SemanticNode)],
        )]
    return [SemanticNode(text=json.dumps({"type": tag, **props}, default=str))]


def _semantic(node: PrimitiveNode, semantic: str, resolve_renderer: Optional[RendererResolver]) -> SemanticNode:
    props = dict(node.props)
    tag = node.type

    if semantic == "heading" and tag.startswith("h") and tag[1:].isdigit():
        props.setdefault("level", int(tag[1:]))
    if semantic == "list":
        if tag == "ol":
            props["ordered"] = True
        props.setdefault("ordered", False)
    if semantic == "image" and "src" not in props:
        props["src"] = props.get("url", "")
    if semantic == "table" and "rows" not in props:
        props.update(_table_from_children(node))

    children = _lower_all(node.children, resolve_renderer)
    semantic_children = [
        c if isinstance(c, SemanticNode) else SemanticNode(text=_block_text(c))
        for c in children
    ]
    return SemanticNode(semantic=semantic, props=props, children=semantic_children)


def _table_from_children(node: PrimitiveNode) -> dict[str, Any]:
    headers: list[str] = []
    rows: list[list[str]] = []
    for row in _rows(node):
        cells = [c for c in row.children if isinstance(c, PrimitiveNode) and c.type in ("th", "td")]
        texts = [_plain(c) for c in cells]
        if cells and all(c.type == "th" for c in cells) and not headers and not rows:
            headers = texts
        else:
            rows.append(texts)
    return {"headers": headers, "rows": rows}


def _rows(node: PrimitiveNode) -> list[PrimitiveNode]:
    rows: list[PrimitiveNode] = []
    for child in node.children:
        if not isinstance(child, PrimitiveNode):
            continue
        if child.type == "tr":
            rows.append(child)
        elif child.type in ("thead", "tbody"):
            rows.extend(_rows(child))
    return rows


def _plain(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, PrimitiveNode):
        return "".join(_plain(c) for c in value.children) or str(value.props.get("text", ""))
    if is_block(value):
        return _block_text(value)
    return str(value)


def _block_text(block: Any) -> str:
    text = getattr(block, "text", None)
    if isinstance(text, str):
        return text
    return json.dumps(block.model_dump(mode="json", exclude_none=True), default=str)


# ─────────────────────────────────────────────────────────────────────────────
# Native blocks
# ─────────────────────────────────────────────────────────────────────────────


def _media_source(props: dict[str, Any]) -> Optional[MediaSource]:
    source = props.get("source")
    if isinstance(source, MediaSource):
        return source
    if isinstance(source, dict):
        return MediaSource(**source)
    if props.get("url"):
        return MediaSource(type="url", url=props["url"], media_type=props.get("media_type"))
    if props.get("data"):
        return MediaSource(type="base64", data=props["data"], media_type=props.get("media_type"))
    return None


def _native_block(node: PrimitiveNode) -> Optional[Any]:
    tag = node.type
    props = node.props
    text = "".join(_plain(c) for c in node.children)

    if tag == "code" and props.get("language"):
        return CodeBlock(text=text or props.get("text", ""), language=props["language"])
    if tag == "json":
        data = props.get("data")
        body = props.get("text") or text or (json.dumps(data, indent=2, default=str) if data is not None else "")
        return JsonBlock(text=body, data=data)
    if tag == "reasoning":
        return ReasoningBlock(text=text or props.get("text", ""))

    if tag in ("image", "audio", "video", "document"):
        source = _media_source(props)
        if source is None:
            return None
        if tag == "image":
            return ImageBlock(source=source, alt_text=props.get("alt_text") or props.get("alt"))
        if tag == "audio":
            return AudioBlock(source=source, transcript=props.get("transcript"))
        if tag == "video":
            return VideoBlock(source=source, transcript=props.get("transcript"))
        return DocumentBlock(source=source, title=props.get("title"))

    if tag == "tool_use":
        return ToolUseBlock(
            tool_use_id=props.get("tool_use_id") or props.get("id", ""),
            name=props.get("name", ""),
            input=dict(props.get("input") or {}),
        )
    if tag == "tool_result":
        content = props.get("content")
        if content is None:
            content = [TextBlock(text=text)] if text else []
        return ToolResultBlock(
            tool_use_id=props.get("tool_use_id", ""),
            name=props.get("name", ""),
            content=parse_blocks(list(content)),
            is_error=bool(props.get("is_error", False)),
        )

    if tag == "user_action":
        return UserActionBlock(
            action=props.get("action", ""),
            actor=props.get("actor"),
            target=props.get("target"),
            details=dict(props.get("details") or {}),
            text=text or props.get("text"),
        )
    if tag == "system_event":
        return SystemEventBlock(
            event=props.get("event", ""),
            source=props.get("source"),
            data=dict(props.get("data") or {}),
            text=text or props.get("text"),
        )
    if tag == "state_change":
        return StateChangeBlock.model_validate({
            "entity": props.get("entity", ""),
            "field": props.get("field"),
            "from": props.get("from"),
            "to": props.get("to"),
            "trigger": props.get("trigger"),
            "text": text or props.get("text"),
        })
    return None
