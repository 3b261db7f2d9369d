"""
aidk/state/signals.py - Reactive Signals

Three primitives with automatic dependency tracking:

  Signal      mutable cell; writes equal to the current value are ignored
  Computed    lazy, memoized derivation; recomputes only on the next read
              after a dependency actually changed
  Effect      side effect that re-runs when its dependencies change

Invalidation is pushed synchronously as a "stale" flag; values are pulled.
Each source carries a version that only advances when its value changes,
so a computed whose inputs were recomputed to equal values is not
re-evaluated, and a shared dependency in a diamond is evaluated once.

ComStateSignal is a Signal whose value lives in a ContextObjectModel under
a key; it must be bound to a COM before it can be read.

Usage:
    count = signal(1)
    doubled = computed(lambda: count() * 2)
    doubled()           # 2
    count.set(5)
    doubled()           # 10
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from aidk.exceptions import CircularDependencyError, ContextError, StateError
from aidk.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_UNSET: Any = object()

# Max effect flush rounds before we assume effects are feeding each other
_MAX_EFFECT_ROUNDS = 100

_observer: ContextVar[Optional["_Observer"]] = ContextVar("aidk_signal_observer", default=None)


def values_equal(a: Any, b: Any) -> bool:
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        return False


# ─────────────────────────────────────────────────────────────────────────────
# Batching / effect scheduling
# ─────────────────────────────────────────────────────────────────────────────


class _Scheduler:
    def __init__(self) -> None:
        self.depth = 0
        self.flushing = False
        self.pending: list["Effect"] = []

    def schedule(self, effect: "Effect") -> None:
        self.pending.append(effect)

    def flush(self) -> None:
        if self.depth > 0 or self.flushing:
            return
        self.flushing = True
        try:
            rounds = 0
            while self.pending:
                rounds += 1
                if rounds > _MAX_EFFECT_ROUNDS:
                    log.warning("signals.effect_flush_limit", pending=len(self.pending))
                    self.pending.clear()
                    break
                batch, self.pending = self.pending, []
                for effect in batch:
                    effect._flush()
        finally:
            self.flushing = False


_scheduler = _Scheduler()


@contextmanager
def batch() -> Iterator[None]:
    """Defer effect re-runs until the outermost batch exits."""
    _scheduler.depth += 1
    try:
        yield
    finally:
        _scheduler.depth -= 1
        if _scheduler.depth == 0:
            _scheduler.flush()


def untracked(fn: Callable[[], T]) -> T:
    """Run fn without recording dependencies on the current observer."""
    token = _observer.set(None)
    try:
        return fn()
    finally:
        _observer.reset(token)


# ─────────────────────────────────────────────────────────────────────────────
# Sources and observers
# ─────────────────────────────────────────────────────────────────────────────


class _Source:
    """Anything that can be read inside a tracking scope."""

    def __init__(self) -> None:
        self._version = 0
        self._dependents: set[_Observer] = set()

    def _track(self) -> None:
        observer = _observer.get()
        if observer is not None:
            observer._record(self)

    def _mark_dependents(self) -> None:
        for dependent in list(self._dependents):
            dependent._mark_stale()

    def _refresh(self) -> None:
        """Bring the value up to date; no-op for plain signals."""


class _Observer(ABC):
    """Anything that re-evaluates when the sources it read change."""

    def __init__(self) -> None:
        self._deps: dict[_Source, int] = {}

    def _record(self, source: _Source) -> None:
        if source not in self._deps:
            self._deps[source] = source._version
            source._dependents.add(self)

    def _clear_deps(self) -> None:
        for source in self._deps:
            source._dependents.discard(self)
        self._deps = {}

    def _deps_changed(self) -> bool:
        for source, seen_version in list(self._deps.items()):
            source._refresh()
            if source._version != seen_version:
                return True
        return False

    @abstractmethod
    def _mark_stale(self) -> None:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Signal
# ─────────────────────────────────────────────────────────────────────────────


class Signal(_Source, Generic[T]):
    """A mutable reactive value."""

    def __init__(
        self,
        initial: T,
        *,
        name: Optional[str] = None,
        equals: Optional[Callable[[Any, Any], bool]] = None,
    ) -> None:
        super().__init__()
        self._value = initial
        self.name = name
        self._equals = equals or values_equal
        self._listeners: list[Callable[[T, T], Any]] = []
        self._disposed = False

    def __call__(self) -> T:
        return self.get()

    def get(self) -> T:
        self._track()
        return self._value

    def peek(self) -> T:
        """Read without tracking."""
        return self._value

    @property
    def value(self) -> T:
        return self.get()

    def set(self, value: T) -> None:
        old = self._value
        if self._equals(old, value):
            return
        self._value = value
        self._version += 1
        if self._disposed:
            return
        self._mark_dependents()
        for listener in list(self._listeners):
            listener(value, old)
        _scheduler.flush()

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self._value))

    def subscribe(self, listener: Callable[[T, T], Any]) -> Callable[[], None]:
        """Call listener(new, old) after every effective write. Returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        self._disposed = True
        self._listeners.clear()
        self._dependents.clear()

    def __repr__(self) -> str:
        label = f" {self.name}" if self.name else ""
        return f"<{type(self).__name__}{label} value={self._value!r}>"


# ─────────────────────────────────────────────────────────────────────────────
# Computed
# ─────────────────────────────────────────────────────────────────────────────


class Computed(_Source, _Observer, Generic[T]):
    """A lazily evaluated, memoized derivation of other signals."""

    def __init__(
        self,
        fn: Callable[[], T],
        *,
        name: Optional[str] = None,
        equals: Optional[Callable[[Any, Any], bool]] = None,
    ) -> None:
        _Source.__init__(self)
        _Observer.__init__(self)
        self._fn = fn
        self.name = name
        self._equals = equals or values_equal
        self._value: Any = _UNSET
        self._stale = True
        self._computing = False
        self._disposed = False
        self.compute_count = 0

    def __call__(self) -> T:
        return self.get()

    def get(self) -> T:
        if self._computing:
            log.error("signals.circular_dependency", computed=self.name)
            raise CircularDependencyError(
                f"Computed {self.name or self._fn!r} read itself while evaluating"
            )
        self._refresh()
        self._track()
        return self._value

    def peek(self) -> T:
        self._refresh()
        return self._value

    @property
    def value(self) -> T:
        return self.get()

    def _refresh(self) -> None:
        if self._disposed or not self._stale:
            return
        if self._value is not _UNSET and not self._deps_changed():
            self._stale = False
            return
        self._recompute()

    def _recompute(self) -> None:
        self._computing = True
        self._clear_deps()
        token = _observer.set(self)
        try:
            new_value = self._fn()
        finally:
            _observer.reset(token)
            self._computing = False
        self._stale = False
        self.compute_count += 1
        if self._value is _UNSET or not self._equals(self._value, new_value):
            self._value = new_value
            self._version += 1

    def _mark_stale(self) -> None:
        if self._stale or self._disposed:
            return
        self._stale = True
        self._mark_dependents()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        self._disposed = True
        self._clear_deps()
        self._dependents.clear()

    def __repr__(self) -> str:
        state = "stale" if self._stale else repr(self._value)
        return f"<Computed {self.name or ''} {state}>"


# ─────────────────────────────────────────────────────────────────────────────
# Effect
# ─────────────────────────────────────────────────────────────────────────────


class Effect(_Observer):
    """Runs fn now and again whenever a dependency changes. fn may return a cleanup."""

    def __init__(self, fn: Callable[[], Any], *, name: Optional[str] = None) -> None:
        super().__init__()
        self._fn = fn
        self.name = name
        self._cleanup: Optional[Callable[[], Any]] = None
        self._scheduled = False
        self._disposed = False
        self.run_count = 0
        self._run()

    def _run(self) -> None:
        self._run_cleanup()
        self._clear_deps()
        token = _observer.set(self)
        try:
            result = self._fn()
        finally:
            _observer.reset(token)
        self.run_count += 1
        self._cleanup = result if callable(result) else None

    def _run_cleanup(self) -> None:
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            cleanup()

    def _mark_stale(self) -> None:
        if self._disposed or self._scheduled:
            return
        self._scheduled = True
        _scheduler.schedule(self)

    def _flush(self) -> None:
        self._scheduled = False
        if self._disposed:
            return
        if self._deps_changed():
            self._run()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._clear_deps()
        self._run_cleanup()


# ─────────────────────────────────────────────────────────────────────────────
# COM-bound state
# ─────────────────────────────────────────────────────────────────────────────


class ComStateSignal(Signal[T]):
    """
    A signal backed by ``com.state[key]``.

    Created unbound (e.g. as a class-component attribute) and bound when the
    owning component mounts. Binding adopts an existing COM value or seeds
    the key with ``initial``. Writes go through the COM so every other
    signal bound to the same key observes them.
    """

    def __init__(self, key: str, initial: Any = None, *, readonly: bool = False) -> None:
        super().__init__(initial, name=key)
        self.key = key
        self.initial = initial
        self.readonly = readonly
        self._com: Any = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def bound(self) -> bool:
        return self._com is not None

    def bind(self, com: Any) -> "ComStateSignal[T]":
        if self._com is com:
            return self
        if self._com is not None:
            self.unbind()
        self._com = com
        if com.has_state(self.key):
            super().set(com.get_state(self.key))
        elif not self.readonly:
            com.set_state(self.key, self.initial)
        self._unsubscribe = com.on_state_change(self._on_com_change)
        return self

    def unbind(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = None
        self._com = None

    def _on_com_change(self, key: str, new: Any, old: Any) -> None:
        if key == self.key:
            super().set(new)

    def get(self) -> T:
        if self._com is None:
            raise ContextError(
                f"com_state('{self.key}') read before its component was mounted"
            )
        return super().get()

    def set(self, value: T) -> None:
        if self.readonly:
            raise StateError(f"com state '{self.key}' is read-only here")
        if self._com is None:
            raise ContextError(
                f"com_state('{self.key}') written before its component was mounted"
            )
        self._com.set_state(self.key, value)

    def dispose(self) -> None:
        # The COM value persists for the execution; only our subscription goes.
        self.unbind()
        super().dispose()


# ─────────────────────────────────────────────────────────────────────────────
# Factories
# ─────────────────────────────────────────────────────────────────────────────


def signal(initial: T, *, name: Optional[str] = None) -> Signal[T]:
    return Signal(initial, name=name)


def computed(fn: Callable[[], T], *, name: Optional[str] = None) -> Computed[T]:
    return Computed(fn, name=name)


def effect(fn: Callable[[], Any], *, name: Optional[str] = None) -> Effect:
    return Effect(fn, name=name)


def com_state(key: str, initial: Any = None) -> ComStateSignal:
    """Declare a COM-backed slot; bound automatically when the component mounts."""
    return ComStateSignal(key, initial)


def watch_com_state(key: str, default: Any = None) -> ComStateSignal:
    """A read-only view of a COM key that never seeds it."""
    return ComStateSignal(key, default, readonly=True)


def is_reactive(value: Any) -> bool:
    return isinstance(value, (Signal, Computed, Effect))
