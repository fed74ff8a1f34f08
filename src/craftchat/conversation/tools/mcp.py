"""
MCP tool backend: JSON-RPC 2.0 over HTTP.

Talks to an external Model Context Protocol server with two methods:

- ``tools/list``  -> ``{"result": {"tools": [{name, description, inputSchema}, ...]}}``
- ``tools/call``  -> ``{"result": {"content": [...], "isError": bool}}``

The server process itself is managed elsewhere; this client only needs its
URL and API key.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from craftchat.conversation.errors import ToolExecutionError, ToolFormatError
from craftchat.conversation.providers.base import ToolDefinition
from craftchat.conversation.tools.backend import ToolResult

if TYPE_CHECKING:
    from craftchat.config import ToolBackendSettings

logger = logging.getLogger(__name__)


def result_text(result: Any) -> str:
    """Flatten a ``tools/call`` result payload into text for the model."""
    if not isinstance(result, dict):
        return json.dumps(result) if result is not None else ""
    content = result.get("content")
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, dict):
                parts.append(f"[{block.get('type')} content]")
            else:
                parts.append(str(block))
        return "\n".join(parts)
    if isinstance(content, str):
        return content
    if content is not None:
        return json.dumps(content)
    if "result" in result:
        value = result["result"]
        return value if isinstance(value, str) else json.dumps(value)
    return json.dumps(result)


class McpToolBackend:
    """``ToolBackend`` that forwards to an MCP server over HTTP.

    Args:
        settings: URL, endpoint, API key, timeout and retry settings.
        transport: Optional ``httpx`` transport (tests use
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        settings: ToolBackendSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_key:
                headers["X-API-Key"] = self.settings.api_key
            self._client = httpx.AsyncClient(
                base_url=self.settings.url.rstrip("/"),
                headers=headers,
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send one JSON-RPC request, retrying transport failures.

        Returns:
            The decoded JSON-RPC response object (may contain ``error``).

        Raises:
            ToolExecutionError: If every attempt fails.
        """
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        attempts = max(1, self.settings.retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._http_client().post(self.settings.endpoint, json=payload)
                resp.raise_for_status()
                data = resp.json()
                if not isinstance(data, dict):
                    raise ToolExecutionError(f"MCP {method} returned a non-object response")
                return data
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt < attempts:
                    logger.warning(
                        "MCP %s attempt %d/%d failed: %s; retrying in %.1fs",
                        method,
                        attempt,
                        attempts,
                        exc,
                        self.settings.retry_delay_seconds,
                    )
                    await asyncio.sleep(self.settings.retry_delay_seconds)
        raise ToolExecutionError(f"MCP {method} failed after {attempts} attempt(s): {last_error}")

    async def list_tools(self) -> list[ToolDefinition]:
        data = await self._rpc("tools/list")
        if "error" in data:
            message = (data.get("error") or {}).get("message", "unknown error")
            raise ToolExecutionError(f"MCP tools/list failed: {message}")
        raw_tools = (data.get("result") or {}).get("tools") or []
        tools: list[ToolDefinition] = []
        for raw in raw_tools:
            try:
                tools.append(ToolDefinition.from_dict(raw))
            except ToolFormatError as exc:
                logger.warning("Skipping malformed MCP tool: %s", exc)
        logger.info("Loaded %d tool(s) from MCP server", len(tools))
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        logger.debug("MCP tools/call %s(%s)", name, arguments)
        data = await self._rpc("tools/call", {"name": name, "arguments": arguments})
        if "error" in data:
            message = (data.get("error") or {}).get("message", "unknown error")
            return ToolResult(call_id=None, name=name, content=f"Error: {message}", is_error=True)

        result = data.get("result")
        text = result_text(result)
        is_error = isinstance(result, dict) and bool(result.get("isError"))
        if is_error:
            text = f"Error: {text}"
        return ToolResult(call_id=None, name=name, content=text, is_error=is_error)

    async def health_check(self) -> bool:
        """Return True if ``tools/list`` answers without a JSON-RPC error."""
        try:
            data = await self._rpc("tools/list")
        except ToolExecutionError as exc:
            logger.warning("MCP health check failed: %s", exc)
            return False
        return "error" not in data

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
