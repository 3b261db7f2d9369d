"""
aidk/compiler/instance.py - Mounted component instances

One ComponentInstance exists per mounted composite node, identified by
its path in the tree. It keeps the hook slots of a function component
(or the object of a class component) alive across ticks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from aidk.compiler.component import Component
from aidk.state.hooks import HookSlot, callbacks
from aidk.state.signals import ComStateSignal


@dataclass
class ComponentInstance:
    path: str
    type: Any
    props: dict[str, Any]
    component: Optional[Component] = None          # class components only
    hooks: list[HookSlot] = field(default_factory=list)
    pending_init: list[Callable[..., Any]] = field(default_factory=list)
    pending_mount: list[Callable[..., Any]] = field(default_factory=list)
    owned: list[Any] = field(default_factory=list)
    mounted: bool = False
    render_count: int = 0
    order: int = 0                                   # pre-order position in the last compile

    @property
    def name(self) -> str:
        return getattr(self.type, "__name__", repr(self.type))

    @property
    def is_class(self) -> bool:
        return self.component is not None

    def own(self, disposable: Any) -> Any:
        self.owned.append(disposable)
        return disposable

    def com_states(self) -> list[ComStateSignal]:
        sources = self.owned + (self.component._owned if self.component is not None else [])
        return [s for s in sources if isinstance(s, ComStateSignal)]

    def hook_callbacks(self, hook: str) -> list[Callable[..., Any]]:
        return callbacks(self, hook)

    def dispose(self) -> None:
        owned = self.owned + (self.component._owned if self.component is not None else [])
        for item in owned:
            item.dispose()
        self.owned.clear()
        if self.component is not None:
            self.component._owned.clear()
        self.hooks.clear()

    def __repr__(self) -> str:
        return f"<ComponentInstance {self.path} renders={self.render_count}>"
