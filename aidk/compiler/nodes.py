"""
aidk/compiler/nodes.py - Component tree nodes

The tree a component renders is built from two node kinds:

  PrimitiveNode  a string tag ("section", "strong", "timeline", ...) that
                 the compiler interprets directly
  CompositeNode  a Component subclass or a function component that renders
                 into more nodes

``h()`` builds either, depending on what ``type`` is. Children may be
nodes, strings, numbers, content blocks, or (nested) lists of those;
None and booleans are dropped so conditional children read naturally:

    h("section", {"id": "rules"},
        h("strong", None, "Be brief."),
        show_hint and "Prefer bullet points.",
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

FRAGMENT = "fragment"


@dataclass
class PrimitiveNode:
    type: str
    props: dict[str, Any] = field(default_factory=dict)
    children: list[Any] = field(default_factory=list)
    key: Optional[str] = None


@dataclass
class CompositeNode:
    type: Any                      # Component subclass or callable(props)
    props: dict[str, Any] = field(default_factory=dict)
    children: list[Any] = field(default_factory=list)
    key: Optional[str] = None

    @property
    def name(self) -> str:
        return getattr(self.type, "__name__", type(self.type).__name__)


Node = PrimitiveNode | CompositeNode


def is_node(value: Any) -> bool:
    return isinstance(value, (PrimitiveNode, CompositeNode))


def flatten_children(children: Iterable[Any]) -> list[Any]:
    flat: list[Any] = []
    for child in children:
        if child is None or isinstance(child, bool):
            continue
        if isinstance(child, (list, tuple)):
            flat.extend(flatten_children(child))
        elif isinstance(child, (int, float)):
            flat.append(str(child))
        else:
            flat.append(child)
    return flat


def h(type: Any, props: Optional[dict[str, Any]] = None, *children: Any, key: Any = None) -> Node:
    """Create a node. ``key`` may also be given as ``props["key"]``."""
    props = dict(props or {})
    if key is None:
        key = props.pop("key", None)
    else:
        props.pop("key", None)
    if key is not None:
        key = str(key)

    flat = flatten_children(children)
    if "children" in props and not flat:
        flat = flatten_children([props.pop("children")])
    else:
        props.pop("children", None)

    if isinstance(type, str):
        return PrimitiveNode(type=type, props=props, children=flat, key=key)
    if not callable(type):
        raise TypeError(f"Node type must be a tag name or a component, got {type!r}")
    return CompositeNode(type=type, props=props, children=flat, key=key)


# ─────────────────────────────────────────────────────────────────────────────
# Structural helpers
# ─────────────────────────────────────────────────────────────────────────────


def fragment(*children: Any, key: Any = None) -> PrimitiveNode:
    return h(FRAGMENT, None, *children, key=key)


def section(
    *children: Any,
    id: Optional[str] = None,
    title: Optional[str] = None,
    key: Any = None,
    **props: Any,
) -> PrimitiveNode:
    """System-prompt section. Sections sharing an id are merged in render order."""
    return h("section", {"id": id, "title": title, **props}, *children, key=key)


def message(role: str, *children: Any, key: Any = None, **props: Any) -> PrimitiveNode:
    """A message in the model input. System messages fold into the system prompt."""
    return h("message", {"role": role, **props}, *children, key=key)


def tool(definition: Any, key: Any = None) -> PrimitiveNode:
    """Make a ToolDefinition available to the model for this tick."""
    return h("tool", {"definition": definition}, key=key)


def renderer(r: Any, *children: Any, key: Any = None) -> PrimitiveNode:
    """Format the subtree with another renderer (instance or name)."""
    return h("renderer", {"renderer": r}, *children, key=key)


def ephemeral(*children: Any, position: str = "end", order: int = 0, key: Any = None) -> PrimitiveNode:
    """Content injected into this tick's model input only; never persisted."""
    return h("ephemeral", {"position": position, "order": order}, *children, key=key)


def timeline(limit: Optional[int] = None, roles: Optional[Iterable[str]] = None, key: Any = None) -> PrimitiveNode:
    """Render the execution's history at this point of the model input."""
    return h(
        "timeline",
        {"limit": limit, "roles": list(roles) if roles is not None else None},
        key=key,
    )
