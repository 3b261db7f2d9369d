"""
aidk/engine/graph.py - Parent/child links between executions

Every run an engine starts is registered here. Roots and spawned runs are
independent trees; a forked run hangs under the execution that forked it
and shares its root.

    graph.children(parent.pid)          # direct forks, any status
    graph.outstanding_forks(parent.pid) # forks still running
    graph.orphaned_forks()              # running forks whose parent finished
    graph.tree(root.pid)                # nested dict snapshot for debugging

A tree is dropped once every execution in it has finished, so the graph
only holds work that is still in flight.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from aidk.observability.logger import get_logger

if TYPE_CHECKING:
    from aidk.engine.handle import ExecutionHandle

log = get_logger(__name__)


class ExecutionGraph:

    def __init__(self) -> None:
        self._handles: dict[str, "ExecutionHandle"] = {}
        self._children: dict[str, list[str]] = {}

    def register(self, handle: "ExecutionHandle") -> None:
        self._handles[handle.pid] = handle
        self._children.setdefault(handle.pid, [])
        if handle.parent_pid is not None:
            self._children.setdefault(handle.parent_pid, []).append(handle.pid)
        log.debug(
            "graph.register",
            pid=handle.pid,
            kind=handle.kind,
            parent_pid=handle.parent_pid,
            root_pid=handle.root_pid,
        )

    def get(self, pid: str) -> Optional["ExecutionHandle"]:
        return self._handles.get(pid)

    def __contains__(self, pid: str) -> bool:
        return pid in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    # ── Queries ───────────────────────────────────────────────────────────────

    def children(self, pid: str) -> list["ExecutionHandle"]:
        return [self._handles[c] for c in self._children.get(pid, ()) if c in self._handles]

    def descendants(self, pid: str) -> list["ExecutionHandle"]:
        found: list["ExecutionHandle"] = []
        for child in self.children(pid):
            found.append(child)
            found.extend(self.descendants(child.pid))
        return found

    def outstanding_forks(self, pid: str) -> list["ExecutionHandle"]:
        return [c for c in self.children(pid) if not c.done]

    def orphaned_forks(self) -> list["ExecutionHandle"]:
        return [
            h for h in self._handles.values()
            if not h.done and h.parent is not None and h.parent.done
        ]

    def active(self) -> list["ExecutionHandle"]:
        return [h for h in self._handles.values() if not h.done]

    def tree(self, pid: str) -> Optional[dict[str, Any]]:
        handle = self._handles.get(pid)
        if handle is None:
            return None
        return {
            "pid": handle.pid,
            "kind": handle.kind,
            "status": handle.status.value,
            "tick": handle.tick,
            "children": [self.tree(c.pid) for c in self.children(pid)],
        }

    # ── Cleanup ───────────────────────────────────────────────────────────────

    def settle(self, pid: str) -> bool:
        """Drop the tree ``pid`` belongs to if all of it has finished."""
        handle = self._handles.get(pid)
        if handle is None:
            return False
        root = self._handles.get(handle.root_pid, handle)
        members = [root] + self.descendants(root.pid)
        if any(not m.done for m in members):
            return False
        for member in members:
            self._handles.pop(member.pid, None)
            self._children.pop(member.pid, None)
        log.debug("graph.settled", root_pid=root.pid, size=len(members))
        return True
