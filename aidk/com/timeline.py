"""
aidk/com/timeline.py - Append-only Timeline and per-tick state

The timeline is the authoritative conversation history of one execution.
Entries are appended, never edited or removed, and carry non-decreasing
tick numbers.

Usage:
    timeline = Timeline()
    timeline.append_message(Message.user("Hello"), tick=1)
    timeline.messages(roles=[Role.USER])
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional

from aidk.content.messages import EntryKind, Event, Message, Role, TimelineEntry
from aidk.exceptions import TimelineError
from aidk.observability.logger import get_logger

if TYPE_CHECKING:
    from aidk.model.types import ModelOutput

log = get_logger(__name__)


class Timeline:
    """Ordered, append-only list of TimelineEntry."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []
        self._listeners: list[Callable[[TimelineEntry], Any]] = []

    # ── Writes ────────────────────────────────────────────────────────────────

    def append(self, entry: TimelineEntry) -> TimelineEntry:
        if entry.tick < 1:
            raise TimelineError(f"Timeline ticks start at 1, got {entry.tick}")
        if self._entries and entry.tick < self._entries[-1].tick:
            raise TimelineError(
                f"Cannot append an entry for tick {entry.tick} after tick "
                f"{self._entries[-1].tick}"
            )
        # Detach from the caller so later mutation of their objects can't reach us
        stored = entry.model_copy(deep=True)
        self._entries.append(stored)
        log.debug(
            "timeline.append",
            kind=stored.kind.value,
            role=stored.role.value,
            tick=stored.tick,
            size=len(self._entries),
        )
        for listener in list(self._listeners):
            listener(stored)
        return stored

    def append_message(self, message: Message, tick: int) -> TimelineEntry:
        return self.append(TimelineEntry.for_message(message, tick))

    def append_event(self, event: Event, tick: int) -> TimelineEntry:
        return self.append(TimelineEntry.for_event(event, tick))

    def on_append(self, listener: Callable[[TimelineEntry], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ── Reads ─────────────────────────────────────────────────────────────────

    @property
    def entries(self) -> tuple[TimelineEntry, ...]:
        return tuple(self._entries)

    @property
    def last_tick(self) -> int:
        return self._entries[-1].tick if self._entries else 0

    def since(self, index: int) -> tuple[TimelineEntry, ...]:
        """Entries appended after the first ``index`` entries."""
        return tuple(self._entries[index:])

    def for_tick(self, tick: int) -> list[TimelineEntry]:
        return [e for e in self._entries if e.tick == tick]

    def messages(self, roles: Optional[Iterable[Role | str]] = None) -> list[Message]:
        wanted = {Role(r) for r in roles} if roles is not None else None
        return [
            e.message
            for e in self._entries
            if e.kind == EntryKind.MESSAGE and (wanted is None or e.role in wanted)
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TimelineEntry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index: int) -> TimelineEntry:
        return self._entries[index]


class TickState:
    """
    What a component sees about the current tick.

    ``current_entries`` are the timeline entries produced since the previous
    tick boundary (the user input on tick 1); ``previous`` is the last
    model output, if any. ``stop()`` asks the engine to end the execution
    before the next model call.
    """

    def __init__(
        self,
        tick: int,
        current_entries: tuple[TimelineEntry, ...] = (),
        previous: Optional["ModelOutput"] = None,
    ) -> None:
        self.tick = tick
        self.current_entries = current_entries
        self.previous = previous
        self.output: Optional["ModelOutput"] = None
        self._stop_reason: Optional[str] = None

    def stop(self, reason: str = "explicit_completion") -> None:
        log.info("tick_state.stop_requested", tick=self.tick, reason=reason)
        self._stop_reason = reason

    @property
    def stop_requested(self) -> bool:
        return self._stop_reason is not None

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def __repr__(self) -> str:
        return f"<TickState tick={self.tick} entries={len(self.current_entries)}>"
