"""
aidk/tools/registry.py - Tool Registry

Engine-wide tools. Components may add more per tick through tool nodes;
``merged()`` overlays those on top of the registry for one model call.

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="get_weather",
        description="Current weather for a city",
        parameters={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    )
    async def get_weather(city: str) -> str:
        ...
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from aidk.observability.logger import get_logger
from aidk.tools.types import ToolDefinition, ToolSpec, ToolVariant

log = get_logger(__name__)


class ToolRegistry:
    """Maps tool names to their definitions (and, for server tools, handlers)."""

    def __init__(self, tools: Optional[Iterable[ToolDefinition]] = None):
        self._tools: dict[str, ToolDefinition] = {}
        for definition in tools or ():
            self.register_tool(definition)

    def register(
        self,
        name: str,
        description: str,
        parameters: Optional[dict[str, Any]] = None,
        category: str = "general",
        requires_confirmation: bool | Callable[..., Any] = False,
        confirmation_message: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        enabled: bool = True,
    ) -> Callable:
        """Decorator registering a server tool handler (sync or async)."""
        def decorator(fn: Callable) -> Callable:
            self.register_tool(
                ToolDefinition(
                    name=name,
                    description=description,
                    parameters=parameters or {"type": "object", "properties": {}, "required": []},
                    variant=ToolVariant.SERVER,
                    handler=fn,
                    requires_confirmation=requires_confirmation,
                    confirmation_message=confirmation_message,
                    timeout_seconds=timeout_seconds,
                    category=category,
                    enabled=enabled,
                )
            )
            return fn

        return decorator

    def register_tool(self, definition: ToolDefinition) -> None:
        """Programmatic registration (alternative to decorator)."""
        if definition.name in self._tools:
            log.warning("tool.replaced", tool=definition.name)
        self._tools[definition.name] = definition
        log.debug(
            "tool.registered",
            tool=definition.name,
            variant=definition.variant.value,
            category=definition.category,
        )

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def get_handler(self, name: str) -> Optional[Callable]:
        definition = self._tools.get(name)
        return definition.handler if definition else None

    def is_registered(self, name: str) -> bool:
        return name in self._tools

    def list_definitions(self, enabled_only: bool = True) -> list[ToolDefinition]:
        definitions = list(self._tools.values())
        if enabled_only:
            definitions = [d for d in definitions if d.enabled]
        return definitions

    def list_names(self, enabled_only: bool = True) -> list[str]:
        return [d.name for d in self.list_definitions(enabled_only)]

    def to_specs(self) -> list[ToolSpec]:
        return [d.to_spec() for d in self.list_definitions(enabled_only=True)]

    def merged(self, extra: Iterable[ToolDefinition] = ()) -> dict[str, ToolDefinition]:
        """Enabled registry tools overlaid by ``extra`` (later definitions win)."""
        tools = {d.name: d for d in self.list_definitions(enabled_only=True)}
        for definition in extra:
            if definition.enabled:
                tools[definition.name] = definition
        return tools

    def enable(self, name: str) -> None:
        if name in self._tools:
            self._tools[name].enabled = True

    def disable(self, name: str) -> None:
        if name in self._tools:
            self._tools[name].enabled = False

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._tools.keys())}>"
