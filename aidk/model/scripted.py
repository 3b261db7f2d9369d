"""
aidk/model/scripted.py - Deterministic scripted model

A ModelAdapter that replays a fixed list of turns instead of calling a
provider. Used by the test suite and for demos that must run offline.

A turn is a string (plain text reply), a ScriptedTurn, or a callable
taking the ModelInput and returning either. Buffered and streaming calls
produce the same ModelOutput for the same turn.

Usage:
    model = ScriptedModel([
        ScriptedTurn(tool_calls=[{"name": "calc", "input": {"expr": "2+2"}}]),
        "The answer is 4.",
    ])
    result = await Engine(model, Agent()).execute("What is 2+2?")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Union

from aidk.content.blocks import ReasoningBlock, TextBlock, dump_blocks, parse_blocks
from aidk.content.messages import Message
from aidk.exceptions import AdapterError
from aidk.model.base import ModelAdapter
from aidk.model.types import ModelInput, ModelOutput, StopReason, Usage
from aidk.tools.types import ToolCall


@dataclass
class ScriptedTurn:
    text: str = ""
    tool_calls: list[Any] = field(default_factory=list)   # ToolCall or {"name", "input", "id"?}
    stop_reason: Optional[StopReason | str] = None
    usage: Optional[Usage] = None
    reasoning: Optional[str] = None
    delay: float = 0.0                                     # seconds slept before answering
    blocks: list[Any] = field(default_factory=list)       # extra content after the tool calls, e.g. provider results


Turn = Union[str, ScriptedTurn, Callable[[ModelInput], Any]]


class ScriptedModel(ModelAdapter):
    """
    Args:
        turns:      Replies in order, one per model call.
        repeat_last: Keep replaying the final turn once the script runs out
                     instead of raising AdapterError.
        chunk_size: Characters per content_delta when streaming.
    """

    name = "scripted"

    def __init__(
        self,
        turns: Sequence[Turn],
        repeat_last: bool = False,
        chunk_size: int = 4,
        model: Optional[str] = "scripted",
    ):
        super().__init__(model=model)
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.chunk_size = max(1, chunk_size)
        self.inputs: list[ModelInput] = []
        self._index = 0

    @property
    def calls(self) -> int:
        return len(self.inputs)

    # ── Provider steps ────────────────────────────────────────────────────────

    async def prepare_input(self, model_input: ModelInput) -> dict[str, Any]:
        self.inputs.append(model_input)
        return {"input": model_input, "turn": self._next_turn_index()}

    async def execute(self, request: dict[str, Any]) -> dict[str, Any]:
        turn = await self._resolve(request)
        if turn.delay:
            await asyncio.sleep(turn.delay)
        return {
            "text": turn.text,
            "reasoning": turn.reasoning,
            "tool_calls": self._calls(turn, request["turn"]),
            "blocks": parse_blocks(list(turn.blocks)),
            "stop_reason": self._stop_reason(turn),
            "usage": turn.usage or _estimate_usage(request["input"], turn.text),
        }

    async def process_output(self, response: dict[str, Any]) -> ModelOutput:
        blocks: list[Any] = []
        if response["reasoning"]:
            blocks.append(ReasoningBlock(text=response["reasoning"]))
        if response["text"]:
            blocks.append(TextBlock(text=response["text"]))
        calls: list[ToolCall] = response["tool_calls"]
        blocks.extend(call.to_block() for call in calls)
        blocks.extend(response["blocks"])
        return ModelOutput(
            messages=[Message.assistant(blocks)] if blocks else [],
            stop_reason=response["stop_reason"],
            tool_calls=calls,
            usage=response["usage"],
            model=self.model,
            raw=response,
        )

    async def execute_stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        response = await self.execute(request)
        yield {"type": "message_start", "model": self.model}

        index = 0
        for block_type in ("reasoning", "text"):
            content = response[block_type]
            if not content:
                continue
            yield {"type": "content_start", "block_type": block_type, "block_index": index}
            for start in range(0, len(content), self.chunk_size):
                await asyncio.sleep(0)
                yield {
                    "type": "content_delta",
                    "block_type": block_type,
                    "block_index": index,
                    "delta": content[start:start + self.chunk_size],
                }
            yield {"type": "content_end", "block_type": block_type, "block_index": index}
            index += 1

        for call in response["tool_calls"]:
            yield {"type": "tool_call", "call": call.model_dump(), "block_index": index}
            index += 1

        for block in dump_blocks(response["blocks"]):
            yield {"type": "content_block", "block_index": index, "block": block}
            index += 1

        yield {
            "type": "message_end",
            "stop_reason": response["stop_reason"].value,
            "usage": response["usage"].model_dump(),
        }

    # ── Script handling ───────────────────────────────────────────────────────

    def _next_turn_index(self) -> int:
        index = self._index
        self._index += 1
        return index

    async def _resolve(self, request: dict[str, Any]) -> ScriptedTurn:
        index = request["turn"]
        if index >= len(self.turns):
            if not (self.repeat_last and self.turns):
                raise AdapterError(
                    f"Scripted model exhausted after {len(self.turns)} turn(s)",
                    details={"adapter": self.name, "call": index + 1},
                )
            index = len(self.turns) - 1

        turn: Any = self.turns[index]
        if callable(turn):
            turn = turn(request["input"])
            if asyncio.iscoroutine(turn):
                turn = await turn
        if isinstance(turn, str):
            return ScriptedTurn(text=turn)
        return turn

    @staticmethod
    def _calls(turn: ScriptedTurn, turn_index: int) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for i, raw in enumerate(turn.tool_calls):
            if isinstance(raw, ToolCall):
                calls.append(raw)
            else:
                calls.append(ToolCall(
                    id=raw.get("id") or f"call_{turn_index + 1}_{i + 1}",
                    name=raw["name"],
                    input=dict(raw.get("input") or {}),
                ))
        return calls

    @staticmethod
    def _stop_reason(turn: ScriptedTurn) -> StopReason:
        if turn.stop_reason is not None:
            return StopReason.coerce(turn.stop_reason)
        return StopReason.TOOL_USE if turn.tool_calls else StopReason.STOP


def _estimate_usage(model_input: ModelInput, text: str) -> Usage:
    # Whitespace token count; deterministic, not a real tokenizer
    prompt = sum(len(m.text.split()) for m in model_input.messages)
    return Usage(input_tokens=prompt, output_tokens=len(text.split()))
