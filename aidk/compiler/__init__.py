"""
aidk/compiler - Component tree → CompiledStructure → model messages.
"""

from __future__ import annotations

from aidk.compiler.component import Component, RecoveryAction
from aidk.compiler.compiler import DEFAULT_MAX_ITERATIONS, Compiler
from aidk.compiler.instance import ComponentInstance
from aidk.compiler.lowering import lower_content
from aidk.compiler.nodes import (
    CompositeNode,
    PrimitiveNode,
    ephemeral,
    fragment,
    h,
    message,
    renderer,
    section,
    timeline,
    tool,
)
from aidk.compiler.structure import (
    CompiledEntry,
    CompiledSection,
    CompiledStructure,
    EphemeralEntry,
    SystemItem,
    consolidate_text_blocks,
    render_messages,
)

__all__ = [
    "Component",
    "RecoveryAction",
    "DEFAULT_MAX_ITERATIONS",
    "Compiler",
    "ComponentInstance",
    "lower_content",
    "CompositeNode",
    "PrimitiveNode",
    "ephemeral",
    "fragment",
    "h",
    "message",
    "renderer",
    "section",
    "timeline",
    "tool",
    "CompiledEntry",
    "CompiledSection",
    "CompiledStructure",
    "EphemeralEntry",
    "SystemItem",
    "consolidate_text_blocks",
    "render_messages",
]
