"""
tests/unit/test_compiler.py - Component compiler tests

Covers:
  - Function components with hooks (state, init, tick callbacks)
  - use_state / use_reducer / use_ref / use_memo / use_previous
  - use_effect deps, cleanup on re-run and unmount; after-compile callbacks
  - Hook misuse raises ContextError
  - Class components: mount, com_state binding, unmount, lifecycle
  - Keyed identity and remounting
  - Structure collection: sections, messages, tools, ephemeral, timeline
  - render_messages ordering and auto-timeline

Run with:
    pytest tests/unit/test_compiler.py -v
"""

from __future__ import annotations

import pytest

from aidk.com.object_model import ContextObjectModel
from aidk.com.timeline import TickState
from aidk.compiler import (
    Component,
    Compiler,
    ephemeral,
    fragment,
    h,
    message,
    renderer,
    section,
    timeline,
    tool,
)
from aidk.compiler.structure import consolidate_text_blocks, render_messages
from aidk.content.blocks import TextBlock, UserActionBlock
from aidk.content.messages import Event, Message, Role
from aidk.exceptions import CompileError, ContextError
from aidk.renderers import MarkdownRenderer
from aidk.state.hooks import (
    use_after_compile,
    use_com,
    use_com_state,
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
)
from aidk.tools.types import ToolDefinition


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def com():
    com = ContextObjectModel("Hello", execution_id="exe_test")
    for m in com.user_input.messages:
        com.timeline.append_message(m, 1)
    com.tick = 1
    return com


@pytest.fixture
def compiler():
    return Compiler()


def system_text(messages: list[Message]) -> str:
    return messages[0].text if messages and messages[0].role == Role.SYSTEM else ""


async def compile_messages(compiler, tree, com, auto_timeline=True):
    structure = await compiler.compile_until_stable(tree, com, TickState(com.tick))
    return render_messages(structure, com, compiler.renderer, auto_timeline)


# ─────────────────────────────────────────────────────────────────────────────
# Function components and hooks
# ─────────────────────────────────────────────────────────────────────────────


class TestFunctionComponents:
    @pytest.mark.asyncio
    async def test_simple_component(self, compiler, com):
        def Assistant(props):
            return section("You are a helpful assistant.", id="role")

        messages = await compile_messages(compiler, Assistant, com)
        assert system_text(messages) == "You are a helpful assistant."
        assert messages[1].role == Role.USER
        assert messages[1].text == "Hello"

    @pytest.mark.asyncio
    async def test_props_are_passed(self, compiler, com):
        def Greeting(props):
            return section(f"Greet {props['name']}.", id="greet")

        messages = await compile_messages(compiler, h(Greeting, {"name": "Ada"}), com)
        assert system_text(messages) == "Greet Ada."

    @pytest.mark.asyncio
    async def test_signal_survives_recompiles(self, compiler, com):
        seen = []

        def Counter(props):
            count = use_signal(0)
            seen.append(count)
            count.update(lambda n: n + 1)
            return section(f"renders={count.peek()}", id="c")

        await compiler.compile(Counter, com, TickState(1))
        await compiler.compile(Counter, com, TickState(1))
        assert seen[0] is seen[1]
        assert seen[0].peek() == 2

    @pytest.mark.asyncio
    async def test_com_state_is_shared(self, compiler, com):
        def Writer(props):
            mode = use_com_state("mode", "chat")
            return section(f"writer={mode()}", id="w")

        def Reader(props):
            mode = use_com_state("mode", "ignored")
            return section(f"reader={mode()}", id="r")

        def Root(props):
            return fragment(h(Writer), h(Reader))

        messages = await compile_messages(compiler, Root, com)
        assert system_text(messages) == "writer=chat\n\nreader=chat"
        assert com.get_state("mode") == "chat"

    @pytest.mark.asyncio
    async def test_use_init_runs_once_and_rerenders(self, compiler, com):
        calls = []

        def Loader(props):
            data = use_com_state("data", "empty")

            async def load(com, tick_state):
                calls.append(tick_state.tick)
                com.set_state("data", "loaded")

            use_init(load)
            return section(f"data={data()}", id="data")

        messages = await compile_messages(compiler, Loader, com)
        assert system_text(messages) == "data=loaded"

        await compile_messages(compiler, Loader, com)
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_use_on_mount_and_unmount(self, compiler, com):
        events = []

        def Child(props):
            use_on_mount(lambda com: events.append("mount"))
            use_on_unmount(lambda com: events.append("unmount"))
            return "child"

        def Parent(props):
            show = use_com_state("show", True)
            return h(Child) if show() else None

        await compiler.compile(Parent, com, TickState(1))
        com.set_state("show", False)
        await compiler.compile(Parent, com, TickState(1))
        assert events == ["mount", "unmount"]

    @pytest.mark.asyncio
    async def test_tick_start_callback(self, compiler, com):
        ticks = []

        def Tracker(props):
            use_tick_start(lambda com, state: ticks.append(state.tick))
            return "tracking"

        await compiler.compile(Tracker, com, TickState(1))
        await compiler.notify_tick_start(com, TickState(2))
        await compiler.notify_tick_start(com, TickState(3))
        assert ticks == [2, 3]

    @pytest.mark.asyncio
    async def test_hook_order_change_raises(self, compiler, com):
        def Unstable(props):
            if com.get_state("flip"):
                use_com_state("x", 1)
            use_signal(0)
            return "unstable"

        await compiler.compile(Unstable, com, TickState(1))
        com.set_state("flip", True)
        with pytest.raises(ContextError):
            await compiler.compile(Unstable, com, TickState(1))

    def test_hook_outside_render_raises(self):
        with pytest.raises(ContextError):
            use_signal(0)

    @pytest.mark.asyncio
    async def test_render_error_becomes_compile_error(self, compiler, com):
        def Broken(props):
            raise RuntimeError("boom")

        with pytest.raises(CompileError) as exc_info:
            await compiler.compile(Broken, com, TickState(1))
        assert "Broken" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_async_component(self, compiler, com):
        async def Fetching(props):
            return section("fetched", id="f")

        messages = await compile_messages(compiler, Fetching, com)
        assert system_text(messages) == "fetched"


# ─────────────────────────────────────────────────────────────────────────────
# State and effect hooks
# ─────────────────────────────────────────────────────────────────────────────


class TestStateHooks:
    @pytest.mark.asyncio
    async def test_use_state_setter_takes_value_or_function(self, compiler, com):
        def Counter(props):
            count, set_count = use_state(0)
            use_tick_start(lambda com, state: set_count(lambda n: n + 1))
            use_tick_end(lambda com, state: set_count(10) if state.tick == 3 else None)
            return section(f"count={count}", id="c")

        await compiler.compile(Counter, com, TickState(1))
        await compiler.notify_tick_start(com, TickState(2))
        await compiler.notify_tick_start(com, TickState(3))
        messages = await compile_messages(compiler, Counter, com)
        assert system_text(messages) == "count=2"

        await compiler.notify_tick_end(com, TickState(3))
        messages = await compile_messages(compiler, Counter, com)
        assert system_text(messages) == "count=10"

    @pytest.mark.asyncio
    async def test_state_set_while_compiling_recompiles(self, compiler, com):
        renders = []

        def Loader(props):
            status, set_status = use_state("loading")
            use_effect(lambda com: set_status("ready"), [])
            renders.append(status)
            return section(status, id="s")

        messages = await compile_messages(compiler, Loader, com)
        assert system_text(messages) == "ready"
        assert renders == ["loading", "ready"]

    @pytest.mark.asyncio
    async def test_use_reducer(self, compiler, com):
        def reducer(state, action):
            return state + action["by"] if action["type"] == "add" else 0

        def Tally(props):
            total, dispatch = use_reducer(reducer, 1)
            use_tick_start(lambda com, state: dispatch({"type": "add", "by": state.tick}))
            return section(f"total={total}", id="t")

        await compiler.compile(Tally, com, TickState(1))
        await compiler.notify_tick_start(com, TickState(2))
        await compiler.notify_tick_start(com, TickState(3))
        messages = await compile_messages(compiler, Tally, com)
        assert system_text(messages) == "total=6"

    @pytest.mark.asyncio
    async def test_use_ref_and_use_previous(self, compiler, com):
        seen = []

        def Tracker(props):
            renders = use_ref(0)
            renders.current += 1
            previous = use_previous(com.get_state("mode"))
            seen.append((renders.current, previous))
            return "tracking"

        com.set_state("mode", "chat")
        await compiler.compile(Tracker, com, TickState(1))
        com.set_state("mode", "plan")
        await compiler.compile(Tracker, com, TickState(2))
        await compiler.compile(Tracker, com, TickState(3))
        assert seen == [(1, None), (2, "chat"), (3, "plan")]
        assert com.consume_recompile_requests() == []

    @pytest.mark.asyncio
    async def test_use_memo_recomputes_on_deps_change(self, compiler, com):
        calls = []

        def Expensive(props):
            size = com.get_state("size")
            value = use_memo(lambda: calls.append(size) or size * 2, [size])
            return section(f"value={value}", id="m")

        com.set_state("size", 2)
        await compiler.compile(Expensive, com, TickState(1))
        await compiler.compile(Expensive, com, TickState(2))
        com.set_state("size", 5)
        messages = await compile_messages(compiler, Expensive, com)
        assert system_text(messages) == "value=10"
        assert calls == [2, 5]


class TestEffectHooks:
    @pytest.mark.asyncio
    async def test_effect_reruns_when_deps_change_and_cleans_up(self, compiler, com):
        log = []

        def Watch(props):
            dep = use_com().get_state("dep")

            def effect(com):
                log.append(("run", dep))
                return lambda: log.append(("cleanup", dep))

            use_effect(effect, [dep])
            return "watching"

        com.set_state("dep", 1)
        await compiler.compile(Watch, com, TickState(1))
        await compiler.compile(Watch, com, TickState(2))
        assert log == [("run", 1)]

        com.set_state("dep", 2)
        await compiler.compile(Watch, com, TickState(3))
        assert log == [("run", 1), ("cleanup", 1), ("run", 2)]

        await compiler.unmount_all(com)
        assert log[-1] == ("cleanup", 2)

    @pytest.mark.asyncio
    async def test_effect_without_deps_runs_every_render(self, compiler, com):
        runs = []

        def Always(props):
            use_effect(lambda com: runs.append(com.tick))
            return "always"

        await compiler.compile(Always, com, TickState(1))
        com.tick = 2
        await compiler.compile(Always, com, TickState(2))
        assert runs == [1, 2]

    @pytest.mark.asyncio
    async def test_async_effect_and_cleanup(self, compiler, com):
        log = []

        async def cleanup():
            log.append("cleanup")

        async def effect(com):
            log.append("run")
            return cleanup

        def Child(props):
            use_effect(effect, [])
            use_on_unmount(lambda com: log.append("unmount"))
            return "child"

        def Parent(props):
            return h(Child) if com.get_state("show", True) else None

        await compiler.compile(Parent, com, TickState(1))
        com.set_state("show", False)
        await compiler.compile(Parent, com, TickState(2))
        assert log == ["run", "cleanup", "unmount"]

    @pytest.mark.asyncio
    async def test_effect_error_becomes_compile_error(self, compiler, com):
        def effect(com):
            raise RuntimeError("boom")

        def Faulty(props):
            use_effect(effect, [])
            return "faulty"

        with pytest.raises(CompileError) as exc_info:
            await compiler.compile(Faulty, com, TickState(1))
        assert "Faulty effect failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_after_compile_sees_the_structure(self, compiler, com):
        seen = []

        class Inspector(Component):
            async def on_after_compile(self, com, structure):
                seen.append(("class", sorted(structure.sections)))

            def render(self, com, tick_state):
                return section("b", id="b")

        def Root(props):
            use_after_compile(lambda com, structure: seen.append(("hook", sorted(structure.sections))))
            return fragment(section("a", id="a"), h(Inspector))

        await compiler.compile(Root, com, TickState(1))
        assert seen == [("hook", ["a", "b"]), ("class", ["a", "b"])]


# ─────────────────────────────────────────────────────────────────────────────
# Class components
# ─────────────────────────────────────────────────────────────────────────────


class Recorder(Component):
    log: list = []

    def __init__(self, props):
        super().__init__(props)
        self.turns = self.com_state("turns", 0)

    async def on_mount(self, com):
        Recorder.log.append(("mount", self.props.get("label"), self.turns()))

    async def on_tick_start(self, com, tick_state):
        self.turns.update(lambda n: n + 1)

    async def on_unmount(self, com):
        Recorder.log.append(("unmount", self.props.get("label")))

    def render(self, com, tick_state):
        return section(f"{self.props.get('label')} turns={self.turns()}", id=f"rec_{self.props.get('label')}")


@pytest.fixture(autouse=True)
def _reset_recorder():
    Recorder.log = []
    yield


class TestClassComponents:
    @pytest.mark.asyncio
    async def test_com_state_bound_before_mount(self, compiler, com):
        await compiler.compile(h(Recorder, {"label": "a"}), com, TickState(1))
        assert Recorder.log == [("mount", "a", 0)]

    @pytest.mark.asyncio
    async def test_tick_start_updates_state(self, compiler, com):
        tree = h(Recorder, {"label": "a"})
        await compiler.compile(tree, com, TickState(1))
        await compiler.notify_tick_start(com, TickState(2))
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "a turns=1"
        assert com.get_state("turns") == 1

    @pytest.mark.asyncio
    async def test_unmount_all(self, compiler, com):
        await compiler.compile(h(Recorder, {"label": "a"}), com, TickState(1))
        await compiler.unmount_all(com)
        assert Recorder.log[-1] == ("unmount", "a")
        assert compiler.instances == {}
        # COM values outlive the component
        assert com.get_state("turns") == 0

    @pytest.mark.asyncio
    async def test_keyed_children_keep_identity_when_reordered(self, compiler, com):
        def List(props):
            return [h(Recorder, {"label": label}, key=label) for label in com.get_state("order")]

        com.set_state("order", ["a", "b"])
        await compiler.compile(List, com, TickState(1))
        first = {path: inst.component for path, inst in compiler.instances.items() if "Recorder" in path}

        com.set_state("order", ["b", "a"])
        await compiler.compile(List, com, TickState(1))
        second = {path: inst.component for path, inst in compiler.instances.items() if "Recorder" in path}

        assert first == second
        assert [e[0] for e in Recorder.log] == ["mount", "mount"]

    @pytest.mark.asyncio
    async def test_type_change_remounts(self, compiler, com):
        class Other(Component):
            def render(self, com, tick_state):
                return "other"

        def Switch(props):
            return h(Other) if com.get_state("other") else h(Recorder, {"label": "a"})

        await compiler.compile(Switch, com, TickState(1))
        com.set_state("other", True)
        await compiler.compile(Switch, com, TickState(1))
        assert Recorder.log == [("mount", "a", 0), ("unmount", "a")]

    @pytest.mark.asyncio
    async def test_key_change_remounts_same_type(self, compiler, com):
        def Keyed(props):
            return h(Recorder, {"label": "a"}, key=com.get_state("key"))

        com.set_state("key", "x")
        await compiler.compile(Keyed, com, TickState(1))
        first = [inst.component for path, inst in compiler.instances.items() if "Recorder" in path]

        com.set_state("key", "y")
        await compiler.compile(Keyed, com, TickState(1))
        second = [inst.component for path, inst in compiler.instances.items() if "Recorder" in path]

        assert len(first) == len(second) == 1
        assert first[0] is not second[0]
        assert Recorder.log == [("mount", "a", 0), ("mount", "a", 0), ("unmount", "a")]

    @pytest.mark.asyncio
    async def test_notify_error_returns_first_recovery(self, compiler, com):
        from aidk.compiler import RecoveryAction

        class Recovering(Component):
            async def on_error(self, com, error, phase):
                return RecoveryAction(output="fallback")

            def render(self, com, tick_state):
                return "ok"

        await compiler.compile(Recovering, com, TickState(1))
        action = await compiler.notify_error(com, RuntimeError("x"), "model")
        assert action is not None
        assert action.output == "fallback"


# ─────────────────────────────────────────────────────────────────────────────
# Structure and message rendering
# ─────────────────────────────────────────────────────────────────────────────


class TestStructure:
    @pytest.mark.asyncio
    async def test_section_title_and_merge_by_id(self, compiler, com):
        tree = fragment(
            section("Be brief.", id="rules", title="Rules"),
            section("Cite sources.", id="rules"),
        )
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "## Rules\nBe brief.\nCite sources."

    @pytest.mark.asyncio
    async def test_system_message_folds_into_system_prompt(self, compiler, com):
        tree = fragment(
            section("Role text.", id="role"),
            message("system", "Extra system text."),
        )
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "Role text.\n\nExtra system text."
        assert [m.role for m in messages] == [Role.SYSTEM, Role.USER]

    @pytest.mark.asyncio
    async def test_inline_content_stays_one_block(self, compiler, com):
        tree = section("Hello ", h("strong", None, "world"), "!", id="s")
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "Hello **world**!"

    @pytest.mark.asyncio
    async def test_tools_are_collected(self, compiler, com):
        calc = ToolDefinition(name="calc", description="Evaluate arithmetic")
        tree = fragment(
            section("Use tools.", id="s"),
            tool(calc),
            tool({"name": "lookup"}),
        )
        structure = await compiler.compile(tree, com, TickState(1))
        assert [t.name for t in structure.tools] == ["calc", "lookup"]

    @pytest.mark.asyncio
    async def test_explicit_timeline_position_and_limit(self, compiler, com):
        com.timeline.append_message(Message.assistant("Hi there"), 1)
        tree = fragment(
            section("sys", id="s"),
            timeline(limit=1),
            message("user", "After history"),
        )
        messages = await compile_messages(compiler, tree, com)
        assert [m.text for m in messages] == ["sys", "Hi there", "After history"]

    @pytest.mark.asyncio
    async def test_timeline_role_filter(self, compiler, com):
        com.timeline.append_message(Message.assistant("Hi there"), 1)
        tree = fragment(timeline(roles=["assistant"]))
        messages = await compile_messages(compiler, tree, com)
        assert [m.text for m in messages] == ["Hi there"]

    @pytest.mark.asyncio
    async def test_auto_timeline_can_be_disabled(self, compiler, com):
        tree = section("sys", id="s")
        messages = await compile_messages(compiler, tree, com, auto_timeline=False)
        assert [m.role for m in messages] == [Role.SYSTEM]

    @pytest.mark.asyncio
    async def test_ephemeral_positions(self, compiler, com):
        tree = fragment(
            section("sys", id="s"),
            ephemeral("late", order=2),
            ephemeral("early", order=1),
            ephemeral("first", position="start"),
        )
        messages = await compile_messages(compiler, tree, com)
        assert [m.text for m in messages] == ["sys", "first", "Hello", "early", "late"]
        assert messages[1].metadata == {"ephemeral": True}
        # Ephemeral content never reaches the timeline
        assert [e.message.text for e in com.timeline] == ["Hello"]

    @pytest.mark.asyncio
    async def test_event_entries_are_formatted_as_user_text(self, compiler, com):
        com.timeline.append_event(Event(content=[UserActionBlock(action="clicked", target="submit")]), 1)
        messages = await compile_messages(compiler, section("sys", id="s"), com)
        assert messages[-1].role == Role.USER
        assert messages[-1].text == "User clicked on submit"

    @pytest.mark.asyncio
    async def test_renderer_scope(self, compiler, com):
        tree = section(renderer("xml", h("strong", None, "x")), id="s")
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "<strong>x</strong>"

    @pytest.mark.asyncio
    async def test_nested_renderer_scopes(self, compiler, com):
        tree = section(
            renderer("xml", h("strong", None, "x"), renderer("markdown", h("strong", None, "y")), h("em", None, "z")),
            id="s",
        )
        messages = await compile_messages(compiler, tree, com)
        assert system_text(messages) == "<strong>x</strong>**y**<em>z</em>"

    @pytest.mark.asyncio
    async def test_fingerprint_is_stable(self, compiler, com):
        tree = fragment(section("a", id="s"), tool(ToolDefinition(name="t")))
        first = await compiler.compile(tree, com, TickState(1))
        second = await compiler.compile(tree, com, TickState(1))
        assert first.fingerprint() == second.fingerprint()

    def test_consolidate_text_blocks(self):
        blocks = consolidate_text_blocks([
            TextBlock(text="a"),
            TextBlock(text="b"),
            UserActionBlock(action="x"),
            TextBlock(text="c"),
        ])
        assert [getattr(b, "text", None) for b in blocks] == ["a\n\nb", None, "c"]

    @pytest.mark.asyncio
    async def test_recompile_until_stable(self, compiler, com):
        renders = []

        def Settling(props):
            step = use_com_state("step", 0)
            renders.append(step())
            if step() < 2:
                step.set(step() + 1)
            return section(f"step={step()}", id="s")

        structure = await compiler.compile_until_stable(Settling, com, TickState(1))
        messages = render_messages(structure, com, MarkdownRenderer())
        assert system_text(messages) == "step=2"
        assert renders == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_max_iterations_bounds_recompiles(self, com):
        compiler = Compiler(max_iterations=3)
        renders = []

        def Restless(props):
            n = use_com_state("n", 0)
            renders.append(n())
            n.set(n() + 1)
            return "restless"

        await compiler.compile_until_stable(Restless, com, TickState(1))
        assert len(renders) == 3
