"""
aidk/tools - Tool definitions, registry, routing and execution.
"""

from __future__ import annotations

from aidk.tools.coordinators import ClientToolCoordinator, ConfirmationCoordinator
from aidk.tools.executor import (
    DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_RESULT_CHARS,
    ToolExecutor,
)
from aidk.tools.registry import ToolRegistry
from aidk.tools.routing import HttpToolRouter, ToolRouter
from aidk.tools.types import (
    DENIED_MESSAGE,
    ToolCall,
    ToolDefinition,
    ToolErrorType,
    ToolResult,
    ToolSpec,
    ToolVariant,
)

__all__ = [
    "ClientToolCoordinator",
    "ConfirmationCoordinator",
    "DEFAULT_CONFIRMATION_TIMEOUT_SECONDS",
    "DEFAULT_TIMEOUT_SECONDS",
    "MAX_RESULT_CHARS",
    "ToolExecutor",
    "ToolRegistry",
    "HttpToolRouter",
    "ToolRouter",
    "DENIED_MESSAGE",
    "ToolCall",
    "ToolDefinition",
    "ToolErrorType",
    "ToolResult",
    "ToolSpec",
    "ToolVariant",
]
