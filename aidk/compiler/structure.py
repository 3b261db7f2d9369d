"""
aidk/compiler/structure.py - Compiled structure and model-input rendering

After components have rendered, the resolved primitive tree is collected
into a CompiledStructure:

  sections   system-prompt sections by id (same id → merged, render order)
  system     order of everything that folds into the system prompt
  entries    non-system messages and timeline() placements, in tree order
  tools      ToolDefinitions contributed by tool() nodes
  ephemeral  per-tick content injected at the start or end of the input

``render_messages`` then turns the structure plus the COM's history into
the message list of one ModelInput.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from aidk.compiler.lowering import STRUCTURAL_TAGS, lower_content
from aidk.compiler.nodes import FRAGMENT, PrimitiveNode
from aidk.content.blocks import EVENT_TYPES, TextBlock, is_block
from aidk.content.messages import EntryKind, Message, Role
from aidk.observability.logger import get_logger
from aidk.renderers.base import Renderer, SemanticNode
from aidk.tools.types import ToolDefinition

log = get_logger(__name__)


@dataclass
class CompiledSection:
    id: str
    title: Optional[str] = None
    content: list[Any] = field(default_factory=list)
    renderer: Optional[Renderer] = None


@dataclass
class SystemItem:
    kind: str                        # "section" | "message" | "loose"
    index: int
    section_id: Optional[str] = None
    content: list[Any] = field(default_factory=list)
    renderer: Optional[Renderer] = None


@dataclass
class CompiledEntry:
    kind: str                        # "message" | "history"
    index: int
    role: Optional[Role] = None
    content: list[Any] = field(default_factory=list)
    renderer: Optional[Renderer] = None
    limit: Optional[int] = None
    roles: Optional[list[str]] = None


@dataclass
class EphemeralEntry:
    index: int
    content: list[Any] = field(default_factory=list)
    position: str = "end"
    order: int = 0
    role: Role = Role.USER
    renderer: Optional[Renderer] = None


@dataclass
class CompiledStructure:
    sections: dict[str, CompiledSection] = field(default_factory=dict)
    system: list[SystemItem] = field(default_factory=list)
    entries: list[CompiledEntry] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)
    ephemeral: list[EphemeralEntry] = field(default_factory=list)

    @property
    def has_timeline(self) -> bool:
        return any(e.kind == "history" for e in self.entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sections": [
                {
                    "id": s.id,
                    "title": s.title,
                    "content": _dump_items(s.content),
                    "renderer": _renderer_name(s.renderer),
                }
                for s in self.sections.values()
            ],
            "system": [
                {
                    "kind": i.kind,
                    "section_id": i.section_id,
                    "content": _dump_items(i.content),
                    "renderer": _renderer_name(i.renderer),
                }
                for i in self.system
            ],
            "entries": [
                {
                    "kind": e.kind,
                    "role": e.role.value if e.role else None,
                    "content": _dump_items(e.content),
                    "renderer": _renderer_name(e.renderer),
                    "limit": e.limit,
                    "roles": e.roles,
                }
                for e in self.entries
            ],
            "tools": [t.to_spec().model_dump() for t in self.tools],
            "ephemeral": [
                {
                    "content": _dump_items(e.content),
                    "position": e.position,
                    "order": e.order,
                    "role": e.role.value,
                }
                for e in self.ephemeral
            ],
        }

    def fingerprint(self) -> str:
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()


def _renderer_name(renderer: Optional[Renderer]) -> Optional[str]:
    return renderer.name if renderer is not None else None


def _dump_node(node: SemanticNode) -> dict[str, Any]:
    return {
        "text": node.text,
        "semantic": node.semantic,
        "props": json.loads(json.dumps(node.props, default=str)),
        "children": [_dump_node(c) for c in node.children],
        "renderer": _renderer_name(node.renderer),
    }


def _dump_items(items: list[Any]) -> list[Any]:
    dumped: list[Any] = []
    for item in items:
        if isinstance(item, SemanticNode):
            dumped.append(_dump_node(item))
        elif is_block(item):
            dumped.append(item.model_dump(mode="json", by_alias=True))
        else:
            dumped.append(str(item))
    return dumped


# ─────────────────────────────────────────────────────────────────────────────
# Collection
# ─────────────────────────────────────────────────────────────────────────────


def _is_structural(child: Any) -> bool:
    if not isinstance(child, PrimitiveNode):
        return False
    if child.type in STRUCTURAL_TAGS and child.type != "renderer":
        return True
    if child.type in (FRAGMENT, "renderer"):
        return any(_is_structural(c) for c in child.children)
    return False


class StructureCollector:
    """Walks a resolved primitive tree and fills a CompiledStructure."""

    def __init__(self, resolve_renderer: Callable[[Any], Renderer]):
        self._resolve = resolve_renderer
        self._index = 0
        self.structure = CompiledStructure()

    def _next_index(self) -> int:
        self._index += 1
        return self._index

    def collect(self, children: list[Any], renderer: Optional[Renderer] = None) -> CompiledStructure:
        loose: list[Any] = []

        def flush() -> None:
            if loose:
                content = lower_content(list(loose), self._resolve)
                if content:
                    self.structure.system.append(SystemItem(
                        kind="loose", index=self._next_index(), content=content, renderer=renderer,
                    ))
                loose.clear()

        for child in children:
            if not _is_structural(child):
                loose.append(child)
                continue
            flush()
            if child.type == FRAGMENT:
                self.collect(child.children, renderer)
            elif child.type == "renderer":
                self.collect(child.children, self._resolve(child.props.get("renderer")))
            else:
                getattr(self, f"_collect_{child.type}")(child, renderer)
        flush()
        return self.structure

    def _split(self, children: list[Any]) -> tuple[list[Any], list[Any]]:
        content: list[Any] = []
        nested: list[Any] = []
        for child in children:
            (nested if _is_structural(child) else content).append(child)
        return content, nested

    def _scoped(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> Optional[Renderer]:
        if node.props.get("renderer") is not None:
            return self._resolve(node.props["renderer"])
        return renderer

    # ── Node kinds ────────────────────────────────────────────────────────────

    def _collect_section(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> None:
        scoped = self._scoped(node, renderer)
        content_children, nested = self._split(node.children)
        content = lower_content(content_children, self._resolve)
        section_id = node.props.get("id") or f"section_{self._index + 1}"

        existing = self.structure.sections.get(section_id)
        if existing is None:
            self.structure.sections[section_id] = CompiledSection(
                id=section_id, title=node.props.get("title"), content=content, renderer=scoped,
            )
            self.structure.system.append(SystemItem(
                kind="section", index=self._next_index(), section_id=section_id,
            ))
        else:
            existing.content.extend(content)
            if existing.title is None:
                existing.title = node.props.get("title")
        if nested:
            self.collect(nested, scoped)

    def _collect_message(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> None:
        scoped = self._scoped(node, renderer)
        role = Role(node.props.get("role") or Role.USER)
        content_children, nested = self._split(node.children)
        content = lower_content(content_children, self._resolve)
        if role == Role.SYSTEM:
            self.structure.system.append(SystemItem(
                kind="message", index=self._next_index(), content=content, renderer=scoped,
            ))
        else:
            self.structure.entries.append(CompiledEntry(
                kind="message", index=self._next_index(), role=role, content=content, renderer=scoped,
            ))
        if nested:
            self.collect(nested, scoped)

    def _collect_tool(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> None:
        definition = node.props.get("definition")
        if isinstance(definition, dict):
            definition = ToolDefinition(**definition)
        if not isinstance(definition, ToolDefinition):
            log.warning("compiler.invalid_tool_node", value=repr(definition))
            return
        self.structure.tools.append(definition)

    def _collect_ephemeral(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> None:
        scoped = self._scoped(node, renderer)
        position = node.props.get("position") or "end"
        if position not in ("start", "end"):
            log.warning("compiler.invalid_ephemeral_position", position=position)
            position = "end"
        self.structure.ephemeral.append(EphemeralEntry(
            index=self._next_index(),
            content=lower_content(node.children, self._resolve),
            position=position,
            order=int(node.props.get("order") or 0),
            role=Role(node.props.get("role") or Role.USER),
            renderer=scoped,
        ))

    def _collect_timeline(self, node: PrimitiveNode, renderer: Optional[Renderer]) -> None:
        self.structure.entries.append(CompiledEntry(
            kind="history",
            index=self._next_index(),
            limit=node.props.get("limit"),
            roles=node.props.get("roles"),
            renderer=renderer,
        ))


# ─────────────────────────────────────────────────────────────────────────────
# Rendering to model messages
# ─────────────────────────────────────────────────────────────────────────────


def consolidate_text_blocks(blocks: list[Any]) -> list[Any]:
    """Merge runs of text blocks into one; other blocks are boundaries."""
    merged: list[Any] = []
    buffer: list[str] = []

    def flush() -> None:
        if buffer:
            merged.append(TextBlock(text="\n\n".join(buffer)))
            buffer.clear()

    for block in blocks:
        if isinstance(block, TextBlock):
            buffer.append(block.text)
        else:
            flush()
            merged.append(block)
    flush()
    return merged


def _as_text(items: list[Any], renderer: Renderer) -> str:
    parts: list[str] = []
    for block in renderer.format(items):
        if not isinstance(block, TextBlock):
            block = next(iter(renderer.format_block(block)), None)
        if isinstance(block, TextBlock) and block.text:
            parts.append(block.text)
    return "\n".join(parts)


def _system_text(structure: CompiledStructure, renderer: Renderer) -> str:
    parts: list[str] = []
    for item in sorted(structure.system, key=lambda i: i.index):
        if item.kind == "section":
            section = structure.sections[item.section_id]
            section_parts: list[str] = []
            if section.title:
                section_parts.append(f"## {section.title}")
            text = _as_text(section.content, section.renderer or renderer)
            if text:
                section_parts.append(text)
            if section_parts:
                parts.append("\n".join(section_parts))
        else:
            text = _as_text(item.content, item.renderer or renderer)
            if text:
                parts.append(text)
    return "\n\n".join(parts)


def _history(com: Any, entry: Optional[CompiledEntry], renderer: Renderer) -> list[Message]:
    wanted = {Role(r) for r in entry.roles} if entry is not None and entry.roles else None
    messages: list[Message] = []
    for item in com.timeline:
        if item.kind == EntryKind.EVENT:
            if wanted is not None and Role.EVENT not in wanted and Role.USER not in wanted:
                continue
            text = _as_text(list(item.event.content), renderer)
            if text:
                messages.append(Message.user(text, id=item.event.id))
            continue
        if wanted is not None and item.role not in wanted:
            continue
        message = item.message
        if any(getattr(b, "type", None) in EVENT_TYPES for b in message.content):
            message = message.model_copy(update={"content": renderer.format(list(message.content))})
        messages.append(message)

    limit = entry.limit if entry is not None else None
    if limit is not None and limit >= 0:
        messages = messages[-limit:] if limit else []
    return messages


def _ephemeral(entries: list[EphemeralEntry], position: str, renderer: Renderer) -> list[Message]:
    selected = sorted(
        (e for e in entries if e.position == position),
        key=lambda e: (e.order, e.index),
    )
    messages: list[Message] = []
    for entry in selected:
        content = consolidate_text_blocks(entry.renderer.format(entry.content) if entry.renderer else renderer.format(entry.content))
        if content:
            messages.append(Message.of(entry.role, content, metadata={"ephemeral": True}))
    return messages


def render_messages(
    structure: CompiledStructure,
    com: Any,
    renderer: Renderer,
    auto_timeline: bool = True,
) -> list[Message]:
    """
    Build the model-input messages for one tick:

        system prompt (consolidated sections / system messages / loose content)
        ephemeral(position="start")
        compiled messages and timeline() history, in tree order
        history (only when the tree has no timeline() and auto_timeline is on)
        ephemeral(position="end")
    """
    messages: list[Message] = []

    system = _system_text(structure, renderer)
    if system:
        messages.append(Message.system(system))

    messages.extend(_ephemeral(structure.ephemeral, "start", renderer))

    for entry in structure.entries:
        if entry.kind == "history":
            messages.extend(_history(com, entry, entry.renderer or renderer))
            continue
        active = entry.renderer or renderer
        content = consolidate_text_blocks(active.format(entry.content))
        if content:
            messages.append(Message.of(entry.role, content))

    if auto_timeline and not structure.has_timeline:
        messages.extend(_history(com, None, renderer))

    messages.extend(_ephemeral(structure.ephemeral, "end", renderer))
    return messages
