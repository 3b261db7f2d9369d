"""
aidk/state - Reactive signals and component hooks.
"""

from __future__ import annotations

from aidk.state.hooks import (
    Ref,
    use_after_compile,
    use_com,
    use_com_state,
    use_computed,
    use_effect,
    use_init,
    use_memo,
    use_on_mount,
    use_on_unmount,
    use_previous,
    use_reducer,
    use_ref,
    use_signal,
    use_state,
    use_tick_end,
    use_tick_start,
    use_tick_state,
)
from aidk.state.signals import (
    ComStateSignal,
    Computed,
    Effect,
    Signal,
    batch,
    com_state,
    computed,
    effect,
    signal,
    untracked,
    watch_com_state,
)

__all__ = [
    "ComStateSignal",
    "Computed",
    "Effect",
    "Ref",
    "Signal",
    "batch",
    "com_state",
    "computed",
    "effect",
    "signal",
    "untracked",
    "watch_com_state",
    "use_after_compile",
    "use_com",
    "use_com_state",
    "use_computed",
    "use_effect",
    "use_init",
    "use_memo",
    "use_on_mount",
    "use_on_unmount",
    "use_previous",
    "use_reducer",
    "use_ref",
    "use_signal",
    "use_state",
    "use_tick_end",
    "use_tick_start",
    "use_tick_state",
]
