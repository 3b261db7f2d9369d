"""
aidk/compiler/compiler.py - Component tree compiler

Turns a component tree into a CompiledStructure, keeping component
instances alive across ticks:

    Compiler.compile(tree, com, tick_state)
      → Expand      render composites (mount new ones, reuse by path/key)
      → Unmount     instances whose path disappeared
      → Collect     sections / messages / tools / ephemeral / timeline
      → Notify      use_after_compile callbacks and on_after_compile
      → CompiledStructure

Instance identity is the path of the node in the tree: each segment is
``Type#key`` when the node has a key and ``Type@index`` otherwise, so an
instance survives as long as it keeps its key (or position) under the
same parent. A changed key, position or type is a remount.

The engine drives the lifecycle hooks around compile through
notify_tick_start / notify_tick_end / notify_complete / notify_error.
"""

from __future__ import annotations

from typing import Any, Optional

from aidk.compiler.component import Component, RecoveryAction, is_component_class
from aidk.compiler.instance import ComponentInstance
from aidk.compiler.nodes import CompositeNode, PrimitiveNode, flatten_children, h, is_node
from aidk.compiler.structure import CompiledStructure, StructureCollector
from aidk.content.blocks import is_block
from aidk.exceptions import AidkError, CompileError, ContextError
from aidk.observability.logger import get_logger
from aidk.renderers import MarkdownRenderer, Renderer, get_renderer
from aidk.renderers.base import SemanticNode
from aidk.state.hooks import render_frame, run_cleanups, run_effects
from aidk.utils import maybe_await

log = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 5


class Compiler:
    """
    Usage:
        compiler = Compiler(renderer="markdown")
        structure = await compiler.compile_until_stable(h(Agent), com, tick_state)
    """

    def __init__(self, renderer: Any = None, max_iterations: int = DEFAULT_MAX_ITERATIONS):
        self.renderer: Renderer = self.resolve_renderer(renderer) if renderer is not None else MarkdownRenderer()
        self.max_iterations = max(1, max_iterations)
        self.instances: dict[str, ComponentInstance] = {}
        self._order = 0

    def resolve_renderer(self, value: Any) -> Renderer:
        if value is None:
            return self.renderer
        if isinstance(value, Renderer):
            return value
        if isinstance(value, str):
            return get_renderer(value)
        if isinstance(value, type) and issubclass(value, Renderer):
            return value()
        raise CompileError(f"Not a renderer: {value!r}")

    # ── Compile ───────────────────────────────────────────────────────────────

    async def compile(self, tree: Any, com: Any, tick_state: Any = None) -> CompiledStructure:
        if not is_node(tree) and (is_component_class(tree) or callable(tree)):
            tree = h(tree)

        seen: set[str] = set()
        self._order = 0
        com.begin_compile()
        try:
            resolved = await self._expand(tree, "", 0, com, tick_state, seen)
        finally:
            com.end_compile()

        await self._unmount_missing(seen, com)

        structure = StructureCollector(self.resolve_renderer).collect(resolved)
        await self._after_compile(seen, com, structure)
        log.debug(
            "compiler.compiled",
            instances=len(self.instances),
            sections=len(structure.sections),
            entries=len(structure.entries),
            tools=len(structure.tools),
        )
        return structure

    async def compile_until_stable(self, tree: Any, com: Any, tick_state: Any = None) -> CompiledStructure:
        """
        Compile, then compile again while the render changed COM state or a
        component asked for a recompile, up to max_iterations passes.
        """
        com.consume_recompile_requests()
        structure = CompiledStructure()
        for iteration in range(1, self.max_iterations + 1):
            structure = await self.compile(tree, com, tick_state)
            reasons = com.consume_recompile_requests()
            if not reasons:
                return structure
            log.debug("compiler.recompile", iteration=iteration, reasons=reasons)

        log.warning(
            "compiler.max_iterations_reached",
            max_iterations=self.max_iterations,
            tick=getattr(tick_state, "tick", None),
        )
        return structure

    # ── Expansion ─────────────────────────────────────────────────────────────

    async def _expand(
        self,
        node: Any,
        parent_path: str,
        index: int,
        com: Any,
        tick_state: Any,
        seen: set[str],
    ) -> list[Any]:
        if node is None or isinstance(node, bool):
            return []
        if isinstance(node, (list, tuple)):
            expanded: list[Any] = []
            for i, child in enumerate(flatten_children(node)):
                expanded.extend(await self._expand(child, parent_path, i, com, tick_state, seen))
            return expanded
        if isinstance(node, (str, int, float)):
            return [str(node)]
        if is_block(node) or isinstance(node, SemanticNode):
            return [node]

        if isinstance(node, PrimitiveNode):
            path = f"{parent_path}/{_segment(node.type, node.key, index)}"
            children: list[Any] = []
            for i, child in enumerate(node.children):
                children.extend(await self._expand(child, path, i, com, tick_state, seen))
            return [PrimitiveNode(type=node.type, props=node.props, children=children, key=node.key)]

        if isinstance(node, CompositeNode):
            path = f"{parent_path}/{_segment(node.name, node.key, index)}"
            seen.add(path)
            output = await self._render_composite(node, path, com, tick_state)
            return await self._expand(output, path, 0, com, tick_state, seen)

        log.warning("compiler.unknown_child", value=repr(node)[:200])
        return [str(node)]

    async def _render_composite(self, node: CompositeNode, path: str, com: Any, tick_state: Any) -> Any:
        props = dict(node.props)
        if node.children:
            props["children"] = list(node.children)

        instance = self.instances.get(path)
        if instance is not None and instance.type is not node.type:
            await self._unmount(instance, com)
            instance = None

        self._order += 1
        if instance is None:
            instance = ComponentInstance(path=path, type=node.type, props=props)
            self.instances[path] = instance
            await self._mount(instance, com)
        else:
            instance.props = props
            if instance.component is not None:
                instance.component.props = props
        instance.order = self._order

        output = await self._render(instance, com, tick_state)

        if instance.render_count == 1 and not instance.is_class:
            output = await self._after_first_render(instance, com, tick_state, output)
        if not instance.is_class:
            await self._run_effects(instance, com)
        return output

    async def _mount(self, instance: ComponentInstance, com: Any) -> None:
        log.debug("compiler.mount", component=instance.name, path=instance.path)
        if is_component_class(instance.type):
            try:
                instance.component = instance.type(instance.props)
                for slot in instance.com_states():
                    slot.bind(com)
                await instance.component.on_mount(com)
            except AidkError:
                raise
            except Exception as e:
                raise CompileError(
                    f"{instance.name} failed to mount: {type(e).__name__}: {e}",
                    details={"component": instance.name, "path": instance.path},
                ) from e
        instance.mounted = True

    async def _render(self, instance: ComponentInstance, com: Any, tick_state: Any) -> Any:
        instance.render_count += 1
        try:
            if instance.component is not None:
                return await maybe_await(instance.component.render(com, tick_state))
            with render_frame(instance, com, tick_state):
                return await maybe_await(instance.type(instance.props))
        except AidkError:
            raise
        except Exception as e:
            log.error("compiler.render_failed", component=instance.name, path=instance.path, error=str(e))
            raise CompileError(
                f"{instance.name} failed to render: {type(e).__name__}: {e}",
                details={"component": instance.name, "path": instance.path},
            ) from e

    async def _after_first_render(
        self,
        instance: ComponentInstance,
        com: Any,
        tick_state: Any,
        output: Any,
    ) -> Any:
        mounts, instance.pending_mount = instance.pending_mount, []
        inits, instance.pending_init = instance.pending_init, []
        for fn in mounts:
            await maybe_await(fn(com))
        for fn in inits:
            await maybe_await(fn(com, tick_state))
        if inits:
            # Re-render so whatever init wrote is visible in this compile
            output = await self._render(instance, com, tick_state)
        return output

    async def _run_effects(self, instance: ComponentInstance, com: Any) -> None:
        try:
            await run_effects(instance, com)
        except AidkError:
            raise
        except Exception as e:
            log.error("compiler.effect_failed", component=instance.name, path=instance.path, error=str(e))
            raise CompileError(
                f"{instance.name} effect failed: {type(e).__name__}: {e}",
                details={"component": instance.name, "path": instance.path},
            ) from e

    async def _after_compile(self, seen: set[str], com: Any, structure: CompiledStructure) -> None:
        for instance in self._ordered():
            if instance.path not in seen:
                continue
            try:
                if instance.component is not None:
                    await instance.component.on_after_compile(com, structure)
                else:
                    for fn in instance.hook_callbacks("use_after_compile"):
                        await maybe_await(fn(com, structure))
            except ContextError:
                raise
            except Exception as e:
                log.error("compiler.after_compile_failed", component=instance.name, error=str(e), exc_info=True)

    # ── Unmount ───────────────────────────────────────────────────────────────

    async def _unmount_missing(self, seen: set[str], com: Any) -> None:
        gone = [p for p in self.instances if p not in seen]
        # Deepest first so children unmount before their parents
        for path in sorted(gone, key=lambda p: p.count("/"), reverse=True):
            instance = self.instances.get(path)
            if instance is not None:
                await self._unmount(instance, com)

    async def _unmount(self, instance: ComponentInstance, com: Any) -> None:
        self.instances.pop(instance.path, None)
        log.debug("compiler.unmount", component=instance.name, path=instance.path)
        try:
            if instance.component is not None:
                await instance.component.on_unmount(com)
            else:
                await run_cleanups(instance)
                for fn in instance.hook_callbacks("use_on_unmount"):
                    await maybe_await(fn(com))
        except Exception as e:
            log.error("compiler.unmount_failed", component=instance.name, error=str(e), exc_info=True)
        finally:
            instance.dispose()
            instance.mounted = False

    async def unmount_all(self, com: Any) -> None:
        await self._unmount_missing(set(), com)

    # ── Lifecycle notifications ───────────────────────────────────────────────

    def _ordered(self) -> list[ComponentInstance]:
        return sorted(
            (i for i in self.instances.values() if i.mounted),
            key=lambda i: i.order,
        )

    async def notify_tick_start(self, com: Any, tick_state: Any) -> None:
        await self._notify("tick_start", com, tick_state)

    async def notify_tick_end(self, com: Any, tick_state: Any) -> None:
        await self._notify("tick_end", com, tick_state)

    async def _notify(self, phase: str, com: Any, tick_state: Any) -> None:
        for instance in self._ordered():
            try:
                if instance.component is not None:
                    await getattr(instance.component, f"on_{phase}")(com, tick_state)
                else:
                    for fn in instance.hook_callbacks(f"use_{phase}"):
                        await maybe_await(fn(com, tick_state))
            except ContextError:
                raise
            except Exception as e:
                log.error(
                    f"compiler.{phase}_failed",
                    component=instance.name,
                    error=str(e),
                    exc_info=True,
                )

    async def notify_complete(self, com: Any, result: Any) -> None:
        for instance in self._ordered():
            if instance.component is None:
                continue
            try:
                await instance.component.on_complete(com, result)
            except Exception as e:
                log.error("compiler.complete_failed", component=instance.name, error=str(e), exc_info=True)

    async def notify_error(self, com: Any, error: BaseException, phase: str) -> Optional[RecoveryAction]:
        """Ask class components, in tree order, to recover; the first RecoveryAction wins."""
        for instance in self._ordered():
            if instance.component is None:
                continue
            try:
                action = await instance.component.on_error(com, error, phase)
            except Exception as e:
                log.error("compiler.on_error_failed", component=instance.name, error=str(e), exc_info=True)
                continue
            if isinstance(action, RecoveryAction):
                log.info("compiler.recovered", component=instance.name, phase=phase)
                return action
        return None


def _segment(name: Any, key: Optional[str], index: int) -> str:
    if key is not None:
        return f"{name}#{key}"
    return f"{name}@{index}"


__all__ = ["Compiler", "Component", "DEFAULT_MAX_ITERATIONS"]
