"""
aidk/renderers - Text renderers for compiled semantic content.
"""

from __future__ import annotations

from aidk.exceptions import ConfigError
from aidk.renderers.base import SEMANTIC_TYPES, Renderer, SemanticNode
from aidk.renderers.markdown import MarkdownRenderer
from aidk.renderers.xml import XMLRenderer, escape_xml

_RENDERERS: dict[str, type[Renderer]] = {
    "markdown": MarkdownRenderer,
    "xml": XMLRenderer,
}


def get_renderer(name: str) -> Renderer:
    """Instantiate a renderer by its config name ("markdown" or "xml")."""
    cls = _RENDERERS.get(name.lower())
    if cls is None:
        raise ConfigError(f"Unknown renderer '{name}'. Choose from: {sorted(_RENDERERS)}")
    return cls()


__all__ = [
    "SEMANTIC_TYPES",
    "MarkdownRenderer",
    "Renderer",
    "SemanticNode",
    "XMLRenderer",
    "escape_xml",
    "get_renderer",
]
