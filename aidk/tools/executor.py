"""
aidk/tools/executor.py - Tool Executor

Sits between the model's tool calls and their execution. Every call goes
through the same pipeline:

    ToolCall → ToolExecutor.execute()
      → Lookup (is the tool available this tick?)
      → Parameter validation (JSON schema)
      → Confirmation gate (optional, waits outside the timeout)
      → Variant dispatch (server / client / provider / routed) with timeout,
        wrapped by the "tool.run" interceptors
      → ToolResult (success or error; never raises)

``execute_all`` runs a batch concurrently and returns results in the
order the calls were given, whatever order they finish in.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from aidk.content.blocks import ContentBlock, TextBlock, ToolResultBlock, is_block, parse_block
from aidk.context import current_context
from aidk.exceptions import ToolExecutionError
from aidk.middleware import Envelope, InterceptorChain
from aidk.observability.logger import get_logger
from aidk.tools.coordinators import ClientToolCoordinator, ConfirmationCoordinator
from aidk.tools.routing import DEFAULT_ROUTE, ToolRouter
from aidk.tools.types import ToolCall, ToolDefinition, ToolErrorType, ToolResult, ToolVariant
from aidk.utils import maybe_await

log = get_logger(__name__)

# Max output size fed back to the model; text beyond this is truncated
MAX_RESULT_CHARS = 8_000

# Default tool execution timeout
DEFAULT_TIMEOUT_SECONDS = 30.0

# How long a confirmation prompt waits before counting as denied
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 120.0

ConfirmationRequired = Callable[[ToolCall, str], Optional[Awaitable[Any]]]
ConfirmationResult = Callable[[ToolCall, bool], Optional[Awaitable[Any]]]


class ToolExecutor:
    """
    Usage:
        executor = ToolExecutor(timeout_seconds=10)
        results = await executor.execute_all(calls, registry.merged(compiled.tools))
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        confirmation_timeout_seconds: Optional[float] = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
        client_timeout_seconds: Optional[float] = None,
        max_result_chars: int = MAX_RESULT_CHARS,
        confirmations: Optional[ConfirmationCoordinator] = None,
        client_tools: Optional[ClientToolCoordinator] = None,
        routers: Optional[Mapping[str, ToolRouter]] = None,
        interceptors: Optional[InterceptorChain] = None,
    ):
        """
        Args:
            timeout_seconds:              Max seconds a tool may run before being cancelled.
            confirmation_timeout_seconds: Max seconds to wait for a confirmation answer.
            client_timeout_seconds:       Timeout for client tools that wait for a
                                          response. Defaults to timeout_seconds.
            max_result_chars:             Text results longer than this are truncated.
            confirmations:                Coordinator answering confirmation prompts.
            client_tools:                 Coordinator receiving client tool results.
            routers:                      Route name → ToolRouter for routed tools.
            interceptors:                 Chain whose "tool.run" entries wrap execution.
        """
        self.timeout_seconds = timeout_seconds
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.client_timeout_seconds = client_timeout_seconds or timeout_seconds
        self.max_result_chars = max_result_chars
        self.confirmations = confirmations if confirmations is not None else ConfirmationCoordinator()
        self.client_tools = client_tools if client_tools is not None else ClientToolCoordinator()
        self.routers: dict[str, ToolRouter] = dict(routers or {})
        self.interceptors = interceptors if interceptors is not None else InterceptorChain()

    def add_router(self, router: ToolRouter, name: Optional[str] = None) -> None:
        self.routers[name or router.name] = router

    # ── Batch ─────────────────────────────────────────────────────────────────

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        tools: Mapping[str, ToolDefinition],
        provider_results: Optional[Mapping[str, ToolResultBlock]] = None,
        on_confirmation_required: Optional[ConfirmationRequired] = None,
        on_confirmation_result: Optional[ConfirmationResult] = None,
    ) -> list[ToolResult]:
        """Run every call concurrently; results align with ``calls`` by index."""
        if not calls:
            return []

        log.info("tool_executor.batch", count=len(calls), tools=[c.name for c in calls])

        outcomes = await asyncio.gather(
            *[
                self.execute(
                    call,
                    tools,
                    provider_results=provider_results,
                    on_confirmation_required=on_confirmation_required,
                    on_confirmation_result=on_confirmation_result,
                )
                for call in calls
            ],
            return_exceptions=True,
        )

        results: list[ToolResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, ToolResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                # execute() converts handler failures itself; this is an interceptor
                # or callback that raised
                log.error("tool_executor.unhandled", tool=call.name, error=str(outcome))
                results.append(
                    ToolResult.error(
                        call.id,
                        call.name,
                        f"Tool execution failed: {type(outcome).__name__}: {outcome}",
                    )
                )
            else:
                raise outcome
        return results

    # ── Single call ───────────────────────────────────────────────────────────

    async def execute(
        self,
        call: ToolCall,
        tools: Mapping[str, ToolDefinition],
        provider_results: Optional[Mapping[str, ToolResultBlock]] = None,
        on_confirmation_required: Optional[ConfirmationRequired] = None,
        on_confirmation_result: Optional[ConfirmationResult] = None,
    ) -> ToolResult:
        start_ms = time.monotonic() * 1000

        log.info("tool_executor.dispatch", tool=call.name, tool_use_id=call.id)

        # ── Step 1: Lookup ────────────────────────────────────────────────────
        definition = tools.get(call.name)
        if definition is None:
            log.warning("tool_executor.not_found", tool=call.name)
            return ToolResult.error(
                call.id,
                call.name,
                f"Unknown tool '{call.name}'. Available tools: {sorted(tools)}",
                error_type=ToolErrorType.TOOL_NOT_FOUND.value,
            )

        # ── Step 2: Parameter validation ──────────────────────────────────────
        validation_error = _validate_args(call.input, definition.parameters)
        if validation_error:
            return ToolResult.error(
                call.id,
                call.name,
                f"Invalid parameters: {validation_error}",
                error_type=ToolErrorType.INVALID_ARGUMENTS.value,
            )

        # ── Step 3: Confirmation ──────────────────────────────────────────────
        if await _needs_confirmation(definition, call):
            approved = await self._confirm(
                call, definition, on_confirmation_required, on_confirmation_result
            )
            if not approved:
                log.info("tool_executor.denied", tool=call.name, tool_use_id=call.id)
                return ToolResult.denied(call.id, call.name)

        # ── Step 4: Execute with timeout ──────────────────────────────────────
        timeout = self._timeout_for(definition)
        envelope = Envelope(
            operation="tool.run",
            execution_id=getattr(current_context(), "execution_id", None),
            context=current_context(),
            metadata={"tool_name": call.name, "tool_use_id": call.id, "variant": definition.variant.value},
        )

        async def _final(current: ToolCall) -> ToolResult:
            return await self._dispatch(current, definition, provider_results)

        try:
            result = await asyncio.wait_for(
                self.interceptors.run("tool.run", call, envelope, _final),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            duration_ms = time.monotonic() * 1000 - start_ms
            log.error(
                "tool_executor.timeout",
                tool=call.name,
                timeout_seconds=timeout,
                duration_ms=duration_ms,
            )
            return ToolResult.error(
                call.id,
                call.name,
                f"Tool '{call.name}' timed out after {timeout}s",
                error_type=ToolErrorType.TIMEOUT.value,
                executed_by=definition.variant,
            )
        except ToolExecutionError as e:
            log.warning("tool_executor.tool_error", tool=call.name, error=e.message, error_type=e.error_type)
            return ToolResult.error(
                call.id,
                call.name,
                e.message,
                error_type=e.error_type,
                executed_by=definition.variant,
            )
        except Exception as e:
            duration_ms = time.monotonic() * 1000 - start_ms
            log.error(
                "tool_executor.execution_error",
                tool=call.name,
                error=str(e),
                duration_ms=duration_ms,
                exc_info=True,
            )
            return ToolResult.error(
                call.id,
                call.name,
                f"Tool execution failed: {type(e).__name__}: {e}",
                error_type=ToolErrorType.EXECUTION_ERROR.value,
                executed_by=definition.variant,
            )

        # ── Step 5: Record duration ───────────────────────────────────────────
        duration_ms = time.monotonic() * 1000 - start_ms
        result = result.model_copy(update={"duration_ms": duration_ms})

        log.info(
            "tool_executor.success" if not result.is_error else "tool_executor.error_result",
            tool=call.name,
            tool_use_id=call.id,
            variant=definition.variant.value,
            duration_ms=round(duration_ms, 1),
        )
        return result

    # ── Variant dispatch ──────────────────────────────────────────────────────

    async def _dispatch(
        self,
        call: ToolCall,
        definition: ToolDefinition,
        provider_results: Optional[Mapping[str, ToolResultBlock]],
    ) -> ToolResult:
        if definition.variant == ToolVariant.CLIENT:
            return await self._run_client(call, definition)
        if definition.variant == ToolVariant.PROVIDER:
            return self._run_provider(call, provider_results)
        if definition.variant == ToolVariant.ROUTED:
            return await self._run_routed(call, definition)
        return await self._run_server(call, definition)

    async def _run_server(self, call: ToolCall, definition: ToolDefinition) -> ToolResult:
        if definition.handler is None:
            raise ToolExecutionError(
                f"Tool '{call.name}' has no handler registered.",
                tool_name=call.name,
                error_type=ToolErrorType.TOOL_NO_HANDLER.value,
            )
        raw = await maybe_await(definition.handler(**call.input))
        return ToolResult.success(call.id, call.name, self._normalise(raw), executed_by=ToolVariant.SERVER)

    async def _run_client(self, call: ToolCall, definition: ToolDefinition) -> ToolResult:
        if not definition.requires_response:
            text = definition.default_result or f"[{call.name} rendered on client]"
            return ToolResult.success(call.id, call.name, [TextBlock(text=text)], executed_by=ToolVariant.CLIENT)
        return await self.client_tools.wait_for_result(call)

    def _run_provider(
        self,
        call: ToolCall,
        provider_results: Optional[Mapping[str, ToolResultBlock]],
    ) -> ToolResult:
        block = (provider_results or {}).get(call.id)
        if block is None:
            raise ToolExecutionError(
                f"Provider did not return a result for '{call.name}'",
                tool_name=call.name,
                error_type=ToolErrorType.NO_PROVIDER_RESULT.value,
            )
        return ToolResult(
            tool_use_id=call.id,
            name=call.name,
            content=list(block.content),
            is_error=block.is_error,
            executed_by=ToolVariant.PROVIDER,
        )

    async def _run_routed(self, call: ToolCall, definition: ToolDefinition) -> ToolResult:
        route = definition.route or DEFAULT_ROUTE
        router = self.routers.get(route)
        if router is None:
            raise ToolExecutionError(
                f"No router '{route}' configured for tool '{call.name}'",
                tool_name=call.name,
                error_type=ToolErrorType.NO_ROUTER.value,
            )
        raw = await router.call_tool(call.name, call.input, timeout=self._timeout_for(definition))
        return ToolResult.success(call.id, call.name, self._normalise(raw), executed_by=ToolVariant.ROUTED)

    # ── Confirmation ──────────────────────────────────────────────────────────

    async def _confirm(
        self,
        call: ToolCall,
        definition: ToolDefinition,
        on_required: Optional[ConfirmationRequired],
        on_result: Optional[ConfirmationResult],
    ) -> bool:
        message = definition.confirmation_message or f"Allow {call.name} to execute?"
        log.info("tool_executor.confirmation_required", tool=call.name, tool_use_id=call.id)

        # Register the wait before announcing it so an immediate answer isn't lost
        waiter = asyncio.ensure_future(
            self.confirmations.request(call.id, timeout=self.confirmation_timeout_seconds)
        )
        await asyncio.sleep(0)
        try:
            if on_required is not None:
                await maybe_await(on_required(call, message))
            approved = await waiter
        finally:
            if not waiter.done():
                waiter.cancel()

        if on_result is not None:
            await maybe_await(on_result(call, approved))
        return approved

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _timeout_for(self, definition: ToolDefinition) -> float:
        if definition.timeout_seconds is not None:
            return definition.timeout_seconds
        if definition.variant == ToolVariant.CLIENT and definition.requires_response:
            return self.client_timeout_seconds
        return self.timeout_seconds

    def _normalise(self, raw: Any) -> list[ContentBlock]:
        blocks = _normalise_result(raw)
        return [
            TextBlock(text=_truncate(b.text, self.max_result_chars)) if isinstance(b, TextBlock) else b
            for b in blocks
        ]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


async def _needs_confirmation(definition: ToolDefinition, call: ToolCall) -> bool:
    rule = definition.requires_confirmation
    if callable(rule):
        return bool(await maybe_await(rule(call.input)))
    return bool(rule)


def _validate_args(arguments: dict, schema: dict) -> Optional[str]:
    """
    Validate tool arguments against the JSON schema.
    Returns an error string if invalid, None if valid.

    Checks:
      1. All required fields are present.
      2. Provided values match the declared JSON Schema types, so the model
         gets a clear error instead of an obscure TypeError mid-tool.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    for field in required:
        if field not in arguments:
            return f"Missing required field: '{field}'"

    _JSON_TYPE_MAP: dict[str, type | tuple] = {
        "string":  str,
        "integer": int,
        "number":  (int, float),
        "boolean": bool,
        "array":   list,
        "object":  dict,
    }
    for field, value in arguments.items():
        prop_schema = properties.get(field)
        if prop_schema is None:
            continue  # unknown field: lenient
        json_type = prop_schema.get("type")
        if json_type is None:
            continue
        expected = _JSON_TYPE_MAP.get(json_type)
        if expected is None:
            continue
        # bool is a subclass of int
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{field}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            actual = type(value).__name__
            return f"Field '{field}': expected {json_type}, got {actual}"

    return None


def _normalise_result(result: Any) -> list[ContentBlock]:
    """Convert any tool return value to content blocks."""
    if result is None:
        return [TextBlock(text="Done.")]
    if isinstance(result, str):
        return [TextBlock(text=result)]
    if is_block(result):
        return [result]
    if isinstance(result, list) and result and all(is_block(r) for r in result):
        return list(result)
    if isinstance(result, dict) and result.get("type") in {"text", "image", "json", "code", "document"}:
        try:
            return [parse_block(result)]
        except ValueError:
            pass
    if isinstance(result, (dict, list)):
        return [TextBlock(text=json.dumps(result, indent=2, default=str))]
    return [TextBlock(text=str(result))]


def _truncate(text: str, max_chars: int) -> str:
    """Truncate result if too long, with a notice."""
    if len(text) <= max_chars:
        return text
    return (
        text[:max_chars]
        + f"\n\n[Output truncated: {len(text) - max_chars} chars omitted. "
        f"Total: {len(text)} chars]"
    )
