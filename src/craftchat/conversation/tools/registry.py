"""
In-process tool registry.

``ToolRegistry`` maps tool names to a ``ToolDefinition`` and an async handler,
and implements the ``ToolBackend`` protocol so the orchestrator can use local
Python tools exactly like remote MCP ones.

Typical usage::

    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="give_item",
            description="Give an item to a player.",
            input_schema={
                "type": "object",
                "properties": {"item": {"type": "string"}, "count": {"type": "integer"}},
                "required": ["item"],
            },
        ),
        give_item_handler,
    )
    orchestrator = ConversationOrchestrator(settings, tool_backend=registry)
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from craftchat.conversation.errors import ToolExecutionError
from craftchat.conversation.providers.base import ToolDefinition
from craftchat.conversation.tools.backend import ToolResult

logger = logging.getLogger(__name__)

# Type alias for a single tool handler: async (args_dict) -> result_str
AsyncToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


class ToolRegistry:
    """Registry mapping tool names to their definitions and async handlers.

    Attributes:
        _tools: Internal dict of registered tool entries.
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDefinition, AsyncToolHandler]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, definition: ToolDefinition, handler: AsyncToolHandler) -> None:
        """Register a tool with its async handler.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._tools:
            raise ValueError(
                f"Tool {definition.name!r} is already registered. "
                "Deregister it first before re-registering."
            )
        self._tools[definition.name] = (definition, handler)
        logger.debug("Registered tool: %r", definition.name)

    def deregister(self, name: str) -> None:
        """Remove a registered tool by name.

        Raises:
            KeyError: If the tool is not registered.
        """
        if name not in self._tools:
            raise KeyError(f"Tool {name!r} is not registered.")
        del self._tools[name]
        logger.debug("Deregistered tool: %r", name)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_definitions(self) -> list[ToolDefinition]:
        """Return all registered ``ToolDefinition`` objects (insertion order)."""
        return [defn for defn, _handler in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    # ------------------------------------------------------------------
    # ToolBackend
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[ToolDefinition]:
        return self.get_definitions()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run the handler registered for *name*.

        Raises:
            ToolExecutionError: If the tool is unknown or its handler raises.
        """
        entry = self._tools.get(name)
        if entry is None:
            raise ToolExecutionError(f"Unknown tool: {name!r}")
        _definition, handler = entry
        try:
            content = await handler(arguments)
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.error("Tool %r failed: %s", name, exc, exc_info=True)
            raise ToolExecutionError(f"{type(exc).__name__}: {exc}") from exc
        return ToolResult(call_id=None, name=name, content=content)
