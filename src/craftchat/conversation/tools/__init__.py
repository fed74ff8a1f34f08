"""
Tool execution backends for the craftchat orchestrator.

- ``McpToolBackend`` forwards tool listing and invocation to an external MCP
  server (JSON-RPC 2.0 over HTTP).
- ``ToolRegistry`` runs in-process async handlers.
- ``TTLCache`` is the time- and size-bounded store the orchestrator uses for
  tool definitions and the detection engine uses for decisions.

Quick-start example::

    from craftchat.conversation.tools import ToolRegistry

    registry = ToolRegistry()
    registry.register(definition, handler)
    tools = await registry.list_tools()
"""

from craftchat.conversation.tools.backend import ToolBackend, ToolResult
from craftchat.conversation.tools.cache import TTLCache
from craftchat.conversation.tools.mcp import McpToolBackend
from craftchat.conversation.tools.registry import AsyncToolHandler, ToolRegistry

__all__ = [
    "AsyncToolHandler",
    "McpToolBackend",
    "TTLCache",
    "ToolBackend",
    "ToolRegistry",
    "ToolResult",
]
