"""
Tool backend contract.

The orchestrator only needs two operations from whatever executes tools:
list what is available, and invoke one tool by name.  ``McpToolBackend``
(remote, JSON-RPC over HTTP) and ``ToolRegistry`` (in-process handlers) both
satisfy ``ToolBackend``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from craftchat.conversation.providers.base import ToolDefinition


@dataclass
class ToolResult:
    """Outcome of one tool invocation in neutral form.

    Attributes:
        call_id: Id of the ``ToolCall`` this answers, if known.
        name: Name of the tool that ran.
        content: Textual result fed back to the model.
        is_error: Whether the tool reported a failure.
    """

    call_id: str | None
    name: str
    content: str
    is_error: bool = False


@runtime_checkable
class ToolBackend(Protocol):
    """Anything that can list and execute tools for the orchestrator."""

    async def list_tools(self) -> list[ToolDefinition]:
        """Return the tools currently available."""
        ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute tool *name* with *arguments*.

        Raises:
            ToolExecutionError: If the tool is unknown or cannot be executed.
        """
        ...
