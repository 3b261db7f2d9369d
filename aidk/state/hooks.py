"""
aidk/state/hooks.py - Function Component Hooks

Hooks give function components persistent state and lifecycle callbacks.
Each component instance owns an ordered list of hook slots; the n-th hook
call during a render reads the n-th slot. Calling hooks in a different
order (or a different number of them) between renders is an error, as is
calling any hook outside of a component render.

The compiler opens a render frame around every function-component render:

    with render_frame(instance, com, tick_state):
        result = await maybe_await(component(props))

Usage:
    def Counter(props):
        count = use_com_state("count", 0)
        use_tick_start(lambda com, state: count.update(lambda n: n + 1))
        return h("section", {"id": "counter"}, f"Ticks so far: {count()}")

    def Watcher(props):
        seen, set_seen = use_state(0)
        use_effect(lambda com: com.on_state_change(lambda *_: set_seen(lambda n: n + 1)), [])
        return f"{seen} state changes"
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional, Sequence

from aidk.exceptions import ContextError
from aidk.state.signals import ComStateSignal, Computed, Signal
from aidk.utils import maybe_await

if TYPE_CHECKING:
    from aidk.com.object_model import ContextObjectModel
    from aidk.com.timeline import TickState


@dataclass
class HookSlot:
    kind: str
    value: Any = None
    deps: Optional[tuple] = None


@dataclass
class Ref:
    """Mutable box that survives re-renders without triggering any."""
    current: Any = None


@dataclass
class EffectState:
    fn: Callable[..., Any]
    cleanup: Optional[Callable[..., Any]] = None
    pending: bool = True


@dataclass
class RenderFrame:
    instance: Any
    com: "ContextObjectModel"
    tick_state: Optional["TickState"]
    first_render: bool
    index: int = 0
    created: list[HookSlot] = field(default_factory=list)


_frame: ContextVar[Optional[RenderFrame]] = ContextVar("aidk_render_frame", default=None)


@contextmanager
def render_frame(instance: Any, com: "ContextObjectModel", tick_state: Optional["TickState"]) -> Iterator[RenderFrame]:
    """
    Make hook calls resolve against ``instance`` for the duration of a render.

    ``instance`` needs a ``hooks`` list, a ``name`` and an ``own(disposable)``
    method; the compiler's ComponentInstance provides all three.
    """
    frame = RenderFrame(
        instance=instance,
        com=com,
        tick_state=tick_state,
        first_render=not instance.hooks,
    )
    token = _frame.set(frame)
    try:
        yield frame
    finally:
        _frame.reset(token)
    if not frame.first_render and frame.index != len(instance.hooks):
        raise ContextError(
            f"{instance.name} rendered {frame.index} hooks but previously rendered "
            f"{len(instance.hooks)}; hooks must be called unconditionally and in the same order"
        )


def _current_frame(hook: str) -> RenderFrame:
    frame = _frame.get()
    if frame is None:
        raise ContextError(f"{hook}() can only be called while a function component renders")
    return frame


def _use_slot(hook: str, factory: Callable[[], Any]) -> tuple[HookSlot, bool]:
    frame = _current_frame(hook)
    instance = frame.instance
    index = frame.index
    frame.index += 1

    if index < len(instance.hooks):
        slot = instance.hooks[index]
        if slot.kind != hook:
            raise ContextError(
                f"Hook order changed in {instance.name}: slot {index} was {slot.kind}(), "
                f"now {hook}()"
            )
        return slot, False

    if not frame.first_render:
        raise ContextError(
            f"{instance.name} called more hooks than on its first render"
        )
    slot = HookSlot(kind=hook, value=factory())
    instance.hooks.append(slot)
    frame.created.append(slot)
    return slot, True


# ─────────────────────────────────────────────────────────────────────────────
# State hooks
# ─────────────────────────────────────────────────────────────────────────────


def use_signal(initial: Any) -> Signal:
    """Component-local signal that survives re-renders."""
    slot, created = _use_slot("use_signal", lambda: Signal(initial))
    if created:
        _frame.get().instance.own(slot.value)
    return slot.value


def use_computed(fn: Callable[[], Any], deps: Optional[Sequence[Any]] = None) -> Computed:
    """
    Memoized derivation. Without ``deps`` the first render's fn is kept for
    the component's lifetime; with ``deps`` a change recreates the computed.
    """
    frame = _current_frame("use_computed")
    deps_key = tuple(deps) if deps is not None else None
    slot, created = _use_slot("use_computed", lambda: Computed(fn))
    if created:
        slot.deps = deps_key
        frame.instance.own(slot.value)
    elif deps_key is not None and deps_key != slot.deps:
        slot.value.dispose()
        slot.value = Computed(fn)
        slot.deps = deps_key
        frame.instance.own(slot.value)
    return slot.value


def use_com_state(key: str, initial: Any = None) -> ComStateSignal:
    """Signal backed by ``com.state[key]``; visible to every component sharing the key."""
    frame = _current_frame("use_com_state")
    slot, created = _use_slot("use_com_state", lambda: ComStateSignal(key, initial))
    if created:
        slot.value.bind(frame.com)
        frame.instance.own(slot.value)
    return slot.value


def use_state(initial: Any) -> tuple[Any, Callable[[Any], None]]:
    """
    Local value and its setter. The setter takes a value or a function of
    the previous value; a change made while compiling schedules another pass.
    """
    frame = _current_frame("use_state")
    slot, created = _use_slot("use_state", lambda: Signal(initial))
    state: Signal = slot.value
    if created:
        com = frame.com

        def _changed(new: Any, old: Any) -> None:
            if com.compiling:
                com.request_recompile("use_state")

        state.subscribe(_changed)
        frame.instance.own(state)

    def set_state(value: Any) -> None:
        state.set(value(state.peek()) if callable(value) else value)

    return state.peek(), set_state


def use_reducer(reducer: Callable[[Any, Any], Any], initial: Any) -> tuple[Any, Callable[[Any], None]]:
    """``use_state`` whose updates go through ``reducer(state, action)``."""
    value, set_value = use_state(initial)
    return value, lambda action: set_value(lambda current: reducer(current, action))


def use_ref(initial: Any = None) -> Ref:
    slot, _ = _use_slot("use_ref", lambda: Ref(initial))
    return slot.value


def use_memo(fn: Callable[[], Any], deps: Optional[Sequence[Any]] = None) -> Any:
    """fn() computed on the first render and again whenever ``deps`` change."""
    deps_key = tuple(deps) if deps is not None else None
    slot, created = _use_slot("use_memo", fn)
    if created:
        slot.deps = deps_key
    elif deps_key != slot.deps:
        slot.value = fn()
        slot.deps = deps_key
    return slot.value


def use_previous(value: Any) -> Any:
    """The value passed on the previous render; None on the first."""
    ref = use_ref(None)
    previous, ref.current = ref.current, value
    return previous


def use_com() -> "ContextObjectModel":
    return _current_frame("use_com").com


def use_tick_state() -> Optional["TickState"]:
    return _current_frame("use_tick_state").tick_state


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle hooks
# ─────────────────────────────────────────────────────────────────────────────


def use_init(fn: Callable[..., Any]) -> None:
    """
    fn(com, tick_state) runs once, after the first render; the component is
    then rendered again so anything fn wrote is visible. May be async.
    """
    slot, created = _use_slot("use_init", lambda: fn)
    if created:
        _frame.get().instance.pending_init.append(fn)


def use_on_mount(fn: Callable[..., Any]) -> None:
    """fn(com) runs once, after the first render. May be async."""
    slot, created = _use_slot("use_on_mount", lambda: fn)
    if created:
        _frame.get().instance.pending_mount.append(fn)


def use_tick_start(fn: Callable[..., Any]) -> None:
    """fn(com, tick_state) runs at the start of every later tick."""
    slot, _ = _use_slot("use_tick_start", lambda: fn)
    slot.value = fn


def use_tick_end(fn: Callable[..., Any]) -> None:
    """fn(com, tick_state) runs after every tick's model call and tool results."""
    slot, _ = _use_slot("use_tick_end", lambda: fn)
    slot.value = fn


def use_on_unmount(fn: Callable[..., Any]) -> None:
    """fn(com) runs when the component leaves the tree or the execution ends."""
    slot, _ = _use_slot("use_on_unmount", lambda: fn)
    slot.value = fn


def use_effect(fn: Callable[..., Any], deps: Optional[Sequence[Any]] = None) -> None:
    """
    fn(com) runs after the render that scheduled it: every render without
    ``deps``, otherwise the first render and each one where ``deps`` changed.
    A callable returned by fn is its cleanup; it runs before the next run
    and when the component unmounts. Both may be async.
    """
    deps_key = tuple(deps) if deps is not None else None
    slot, created = _use_slot("use_effect", lambda: EffectState(fn))
    if created:
        slot.deps = deps_key
    elif deps_key is None or deps_key != slot.deps:
        slot.value.fn = fn
        slot.value.pending = True
        slot.deps = deps_key


def use_after_compile(fn: Callable[..., Any]) -> None:
    """fn(com, structure) runs after every compile pass that rendered the component."""
    slot, _ = _use_slot("use_after_compile", lambda: fn)
    slot.value = fn


async def run_effects(instance: Any, com: "ContextObjectModel") -> None:
    for slot in instance.hooks:
        if slot.kind != "use_effect" or not slot.value.pending:
            continue
        state: EffectState = slot.value
        state.pending = False
        if state.cleanup is not None:
            cleanup, state.cleanup = state.cleanup, None
            await maybe_await(cleanup())
        result = await maybe_await(state.fn(com))
        state.cleanup = result if callable(result) else None


async def run_cleanups(instance: Any) -> None:
    for slot in instance.hooks:
        if slot.kind == "use_effect" and slot.value.cleanup is not None:
            cleanup, slot.value.cleanup = slot.value.cleanup, None
            await maybe_await(cleanup())


def callbacks(instance: Any, hook: str) -> list[Callable[..., Any]]:
    """The current callbacks an instance registered through ``hook``."""
    return [slot.value for slot in instance.hooks if slot.kind == hook]
