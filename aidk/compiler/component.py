"""
aidk/compiler/component.py - Class component base

Subclass Component and override the lifecycle methods you need. Only
render() is called on every compile; everything else is optional.

    class Assistant(Component):
        def __init__(self, props):
            super().__init__(props)
            self.turns = self.com_state("turns", 0)

        async def on_tick_start(self, com, tick_state):
            self.turns.update(lambda n: n + 1)

        def render(self, com, tick_state):
            return fragment(
                section("You are a helpful assistant.", id="role"),
                timeline(),
            )

State created through self.signal / self.computed / self.com_state is
owned by the instance: com_state slots are bound before on_mount runs and
everything is disposed on unmount. COM values themselves persist.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from aidk.state.signals import ComStateSignal, Computed, Signal


@dataclass
class RecoveryAction:
    """Returned from on_error to keep an execution alive after a model failure."""
    continue_execution: bool = True
    output: Any = None            # substitute ModelOutput for the failed call


class Component:

    def __init__(self, props: Optional[dict[str, Any]] = None):
        self.props: dict[str, Any] = dict(props or {})
        self._owned: list[Any] = []

    @property
    def children(self) -> list[Any]:
        return list(self.props.get("children") or [])

    # ── Owned state ───────────────────────────────────────────────────────────

    def signal(self, initial: Any, name: Optional[str] = None) -> Signal:
        return self._own(Signal(initial, name=name))

    def computed(self, fn: Callable[[], Any], name: Optional[str] = None) -> Computed:
        return self._own(Computed(fn, name=name))

    def com_state(self, key: str, initial: Any = None) -> ComStateSignal:
        return self._own(ComStateSignal(key, initial))

    def watch_com_state(self, key: str, default: Any = None) -> ComStateSignal:
        return self._own(ComStateSignal(key, default, readonly=True))

    def _own(self, value: Any) -> Any:
        self._owned.append(value)
        return value

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def on_mount(self, com: Any) -> None:
        pass

    async def on_tick_start(self, com: Any, tick_state: Any) -> None:
        pass

    def render(self, com: Any, tick_state: Any) -> Any:
        return None

    async def on_after_compile(self, com: Any, structure: Any) -> None:
        pass

    async def on_tick_end(self, com: Any, tick_state: Any) -> None:
        pass

    async def on_complete(self, com: Any, result: Any) -> None:
        pass

    async def on_error(self, com: Any, error: BaseException, phase: str) -> Optional[RecoveryAction]:
        return None

    async def on_unmount(self, com: Any) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


def is_component_class(value: Any) -> bool:
    return isinstance(value, type) and issubclass(value, Component)
