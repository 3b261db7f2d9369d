"""
aidk/model/base.py - Abstract Model Adapter

Every provider integration subclasses ModelAdapter and implements the
three-step call:

    prepare_input(ModelInput)  -> provider request
    execute(request)           -> provider response
    process_output(response)   -> ModelOutput

Streaming providers additionally implement execute_stream() and, when
their chunks aren't already stream events, process_chunk(). The default
process_stream() rebuilds a ModelOutput purely from the events, so a
streamed turn and a buffered turn land in the timeline identically.

Class attributes:
  - supports_streaming: set False on adapters without execute_stream();
    stream() then falls back to generate() and replays the output as events.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Optional

from aidk.content.blocks import ReasoningBlock, TextBlock
from aidk.content.messages import Message
from aidk.exceptions import AdapterError, AidkError, ValidationError
from aidk.model.types import ModelInput, ModelOutput, StopReason, Usage
from aidk.observability.logger import get_logger
from aidk.tools.types import ToolCall

if TYPE_CHECKING:
    from aidk.engine.events import StreamEvent

log = get_logger(__name__)


class ModelAdapter(ABC):
    """
    Abstract base for all model adapters.

    Subclasses must implement:
      - prepare_input()   -> translate ModelInput into a provider request
      - execute()         -> perform the buffered provider call
      - process_output()  -> normalise the provider response
    """

    name: str = "model"
    supports_streaming: bool = True

    def __init__(self, model: Optional[str] = None):
        self.model = model

    # ── Provider steps ────────────────────────────────────────────────────────

    @abstractmethod
    async def prepare_input(self, model_input: ModelInput) -> Any:
        """Translate a ModelInput into the provider's request shape."""
        ...

    @abstractmethod
    async def execute(self, request: Any) -> Any:
        """Call the provider and return its raw response."""
        ...

    @abstractmethod
    async def process_output(self, response: Any) -> ModelOutput:
        """Normalise a raw provider response into a ModelOutput."""
        ...

    async def execute_stream(self, request: Any) -> AsyncIterator[Any]:
        """Call the provider in streaming mode, yielding raw chunks."""
        raise NotImplementedError(f"{type(self).__name__} does not support streaming")
        yield  # pragma: no cover

    def process_chunk(self, chunk: Any) -> Optional["StreamEvent"]:
        """
        Map one raw chunk to a stream event. Chunks that already are events
        pass through; dicts are parsed by their ``type``. Anything the
        adapter doesn't recognise maps to None and is skipped.
        """
        from aidk.engine.events import parse_event

        return parse_event(chunk)

    def process_stream(self, events: Iterable[Any]) -> ModelOutput:
        """Rebuild the turn's ModelOutput from the events it streamed."""
        texts: dict[int, list[str]] = {}
        reasoning: dict[int, list[str]] = {}
        order: list[tuple[int, str, Any]] = []
        tool_calls: list[ToolCall] = []
        unplaced: list[ToolCall] = []
        stop_reason = StopReason.UNSPECIFIED
        usage = Usage()
        model_name = self.model

        for event in events:
            event_type = getattr(event, "type", None)
            if event_type == "message_start":
                model_name = event.model or model_name
            elif event_type in ("content_start", "content_delta"):
                target = reasoning if event.block_type == "reasoning" else texts
                if event.block_index not in target:
                    target[event.block_index] = []
                    order.append((event.block_index, event.block_type, None))
                if event_type == "content_delta":
                    target[event.block_index].append(event.delta)
            elif event_type == "content_block":
                order.append((event.block_index, "block", event.block))
            elif event_type == "tool_call":
                tool_calls.append(event.call)
                if event.block_index is None:
                    unplaced.append(event.call)
                else:
                    order.append((event.block_index, "block", event.call.to_block()))
            elif event_type == "message_end":
                stop_reason = event.stop_reason
                usage = event.usage

        # Blocks are laid out by block_index; ties keep arrival order
        blocks: list[Any] = []
        for index, kind, block in sorted(order, key=lambda item: item[0]):
            if kind == "block":
                blocks.append(block)
            elif kind == "reasoning":
                blocks.append(ReasoningBlock(text="".join(reasoning[index])))
            else:
                text = "".join(texts[index])
                if text:
                    blocks.append(TextBlock(text=text))
        blocks.extend(call.to_block() for call in unplaced)

        messages = [Message.assistant(blocks)] if blocks else []
        return ModelOutput(
            messages=messages,
            stop_reason=stop_reason,
            tool_calls=tool_calls,
            usage=usage,
            model=model_name,
        )

    # ── Public entry points ───────────────────────────────────────────────────

    async def generate(self, model_input: ModelInput) -> ModelOutput:
        """Buffered call: prepare, execute and normalise, with errors classified."""
        request = await self._prepare(model_input)
        try:
            response = await self.execute(request)
            output = await self.process_output(response)
        except (AidkError, asyncio.CancelledError):
            raise
        except Exception as e:
            log.error("model.generate_failed", adapter=self.name, error=str(e), exc_info=True)
            raise AdapterError(
                f"{self.name} call failed: {type(e).__name__}: {e}",
                details={"adapter": self.name},
            ) from e

        log.info(
            "model.generate",
            adapter=self.name,
            stop_reason=output.stop_reason.value,
            tool_calls=len(output.tool_calls),
            input_tokens=output.usage.input_tokens,
            output_tokens=output.usage.output_tokens,
        )
        return output

    async def stream(self, model_input: ModelInput) -> AsyncIterator[Any]:
        """Streaming call yielding stream events. Falls back to generate()."""
        from aidk.engine.events import output_to_events

        if not self.supports_streaming:
            output = await self.generate(model_input)
            for event in output_to_events(output):
                yield event
            return

        request = await self._prepare(model_input)
        chunks = self.execute_stream(request)
        while True:
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                break
            except (AidkError, asyncio.CancelledError):
                raise
            except Exception as e:
                log.error("model.stream_failed", adapter=self.name, error=str(e), exc_info=True)
                raise AdapterError(
                    f"{self.name} stream failed: {type(e).__name__}: {e}",
                    details={"adapter": self.name},
                ) from e

            event = self.process_chunk(chunk)
            if event is not None:
                yield event

    async def _prepare(self, model_input: ModelInput) -> Any:
        if not model_input.messages:
            raise ValidationError("Model input has no messages")
        try:
            return await self.prepare_input(model_input)
        except AidkError:
            raise
        except Exception as e:
            raise ValidationError(
                f"Could not prepare input for {self.name}: {e}",
                details={"adapter": self.name},
            ) from e

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} model={self.model!r}>"
