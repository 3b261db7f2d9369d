"""
aidk/tools/routing.py - Routed tool execution

A routed tool is executed by an external tool server. The executor looks
up the router named by the tool's ``route`` (or "default") and forwards
the call. HttpToolRouter speaks JSON-RPC 2.0 over HTTP: ``tools/call`` to
execute and ``tools/list`` to discover.

Usage:
    router = HttpToolRouter("search", "http://localhost:8801/rpc")
    executor = ToolExecutor(routers={"search": router})
    for definition in await router.discover():
        registry.register_tool(definition)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from aidk.content.blocks import TextBlock, parse_block
from aidk.exceptions import ToolExecutionError
from aidk.observability.logger import get_logger
from aidk.tools.types import ToolDefinition, ToolErrorType, ToolVariant
from aidk.utils import short_id

log = get_logger(__name__)

DEFAULT_ROUTE = "default"


class ToolRouter(ABC):
    """Forwards tool calls to somewhere else and returns their content."""

    name: str = DEFAULT_ROUTE

    @abstractmethod
    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Execute and return content (str, block, or list of blocks)."""

    async def list_tools(self) -> list[dict[str, Any]]:
        return []

    async def discover(self) -> list[ToolDefinition]:
        """Routed ToolDefinitions for everything this router serves."""
        definitions = []
        for tool in await self.list_tools():
            definitions.append(
                ToolDefinition(
                    name=tool["name"],
                    description=tool.get("description", ""),
                    parameters=tool.get("inputSchema")
                    or tool.get("parameters")
                    or {"type": "object", "properties": {}, "required": []},
                    variant=ToolVariant.ROUTED,
                    route=self.name,
                )
            )
        return definitions

    async def aclose(self) -> None:
        return None


class HttpToolRouter(ToolRouter):
    """JSON-RPC 2.0 tool server over HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.url = url
        self.headers = dict(headers or {})
        self.timeout_seconds = timeout_seconds
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(headers=self.headers, timeout=self.timeout_seconds) as client:
            yield client

    async def _rpc(self, method: str, params: dict[str, Any], timeout: Optional[float]) -> Any:
        payload = {"jsonrpc": "2.0", "id": short_id("rpc"), "method": method, "params": params}
        try:
            async with self._session() as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    headers=self.headers,
                    timeout=timeout or self.timeout_seconds,
                )
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            # Surfaces as the executor's TIMEOUT result
            raise asyncio.TimeoutError(str(e)) from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("router.http_error", router=self.name, method=method, error=str(e))
            raise ToolExecutionError(
                f"Router '{self.name}' request failed: {type(e).__name__}: {e}",
                tool_name=params.get("name"),
                error_type=ToolErrorType.ROUTER_ERROR.value,
            ) from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise ToolExecutionError(
                f"Router '{self.name}' returned an error: {message}",
                tool_name=params.get("name"),
                error_type=ToolErrorType.ROUTER_ERROR.value,
            )
        return body.get("result") or {}

    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        log.debug("router.call_tool", router=self.name, tool=tool_name)
        result = await self._rpc("tools/call", {"name": tool_name, "arguments": arguments}, timeout)

        blocks = []
        for item in result.get("content") or []:
            if item.get("type") == "text":
                blocks.append(TextBlock(text=item.get("text", "")))
            else:
                blocks.append(parse_block(item))

        if result.get("isError"):
            text = "\n".join(b.text for b in blocks if isinstance(b, TextBlock)) or "tool failed"
            raise ToolExecutionError(text, tool_name=tool_name)
        return blocks

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self._rpc("tools/list", {}, None)
        return list(result.get("tools") or [])

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def __repr__(self) -> str:
        return f"<HttpToolRouter {self.name} {self.url}>"
