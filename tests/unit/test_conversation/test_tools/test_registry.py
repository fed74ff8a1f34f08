"""Unit tests for craftchat.conversation.tools.registry.ToolRegistry."""

from __future__ import annotations

import json
from typing import Any

import pytest

from craftchat.conversation.errors import ToolExecutionError
from craftchat.conversation.providers.base import ToolDefinition
from craftchat.conversation.tools.backend import ToolBackend
from craftchat.conversation.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------

_DEF_A = ToolDefinition(
    name="tool_a",
    description="First test tool.",
    input_schema={"type": "object", "properties": {}, "required": []},
)

_DEF_B = ToolDefinition(
    name="tool_b",
    description="Second test tool.",
    input_schema={"type": "object", "properties": {}, "required": []},
)


async def _ok_handler(args: dict[str, Any]) -> str:
    return json.dumps({"status": "ok", "args": args})


async def _raise_handler(args: dict[str, Any]) -> str:
    raise ValueError("handler error")


# ---------------------------------------------------------------------------
# ToolRegistry: registration
# ---------------------------------------------------------------------------


class TestToolRegistryRegistration:
    def test_register_single_tool(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)
        assert "tool_a" in registry
        assert len(registry) == 1

    def test_register_multiple_tools(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)
        registry.register(_DEF_B, _ok_handler)
        assert len(registry) == 2

    def test_duplicate_registration_raises(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_DEF_A, _ok_handler)

    def test_deregister_removes_tool(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)
        registry.deregister("tool_a")
        assert "tool_a" not in registry

    def test_deregister_unknown_raises(self) -> None:
        with pytest.raises(KeyError):
            ToolRegistry().deregister("missing")


# ---------------------------------------------------------------------------
# ToolRegistry: definitions
# ---------------------------------------------------------------------------


class TestToolRegistryDefinitions:
    def test_definitions_in_insertion_order(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_B, _ok_handler)
        registry.register(_DEF_A, _ok_handler)
        assert [d.name for d in registry.get_definitions()] == ["tool_b", "tool_a"]

    @pytest.mark.anyio
    async def test_list_tools_matches_definitions(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)
        assert await registry.list_tools() == [_DEF_A]

    def test_registry_is_a_tool_backend(self) -> None:
        assert isinstance(ToolRegistry(), ToolBackend)


# ---------------------------------------------------------------------------
# ToolRegistry: execution
# ---------------------------------------------------------------------------


class TestToolRegistryExecution:
    @pytest.mark.anyio
    async def test_call_tool_returns_handler_output(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _ok_handler)

        result = await registry.call_tool("tool_a", {"x": 1})

        assert result.name == "tool_a"
        assert json.loads(result.content) == {"status": "ok", "args": {"x": 1}}
        assert result.is_error is False

    @pytest.mark.anyio
    async def test_unknown_tool_raises(self) -> None:
        with pytest.raises(ToolExecutionError, match="Unknown tool"):
            await ToolRegistry().call_tool("missing", {})

    @pytest.mark.anyio
    async def test_handler_exception_is_wrapped(self) -> None:
        registry = ToolRegistry()
        registry.register(_DEF_A, _raise_handler)
        with pytest.raises(ToolExecutionError, match="ValueError: handler error"):
            await registry.call_tool("tool_a", {})
