"""
Tool-schema converters between the neutral tool protocol and each provider's
native tool-calling format.

Every converter accepts a tool in any of the shapes ``ToolDefinition.from_dict``
understands (neutral, or already wrapped by another converter), normalises it
into a ``ToolDefinition`` first, and only then emits its own format.  Feeding a
converter its own output is therefore a no-op, which lets callers cache and
reuse converted tool lists.

Native shapes::

    Ollama / OpenAI   {"type": "function",
                       "function": {"name", "description", "parameters"}}
    Claude            {"name", "description", "input_schema"}
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from typing import Any, ClassVar, Iterable, Mapping, Protocol, runtime_checkable

from craftchat.conversation.errors import ToolFormatError
from craftchat.conversation.providers.base import ToolDefinition
from craftchat.conversation.tools.backend import ToolResult

logger = logging.getLogger(__name__)

ToolInput = ToolDefinition | Mapping[str, Any]


def normalize_tool(tool: ToolInput) -> ToolDefinition:
    """Return *tool* as a ``ToolDefinition``.

    Raises:
        ToolFormatError: If the tool cannot be interpreted.
    """
    if isinstance(tool, ToolDefinition):
        if not tool.name or not tool.name.strip():
            raise ToolFormatError(f"Tool has no name: {tool!r}")
        if not tool.description or not tool.description.strip():
            return dataclasses.replace(tool, description=f"Tool: {tool.name}")
        return tool
    # Claude's native shape names the schema ``input_schema``; from_dict
    # accepts that alongside the neutral keys.
    return ToolDefinition.from_dict(tool)


@runtime_checkable
class ToolConverter(Protocol):
    """Converts tools and tool results for one provider."""

    provider_name: str

    def convert_tool(self, tool: ToolInput) -> dict[str, Any] | None: ...

    def convert_tools(self, tools: Iterable[ToolInput]) -> list[dict[str, Any]]: ...

    def convert_tool_result(self, result: Mapping[str, Any]) -> ToolResult: ...

    def validate_tool(self, tool: Mapping[str, Any]) -> bool: ...


class _BaseConverter:
    provider_name: ClassVar[str] = ""

    def convert_tool(self, tool: ToolInput) -> dict[str, Any] | None:
        """Convert one tool, returning ``None`` if it cannot be interpreted."""
        try:
            definition = normalize_tool(tool)
        except ToolFormatError as exc:
            logger.warning("Skipping tool for %s: %s", self.provider_name, exc)
            return None
        return self._to_native(definition)

    def convert_tools(self, tools: Iterable[ToolInput]) -> list[dict[str, Any]]:
        """Convert and validate *tools*; bad entries are logged and skipped."""
        converted: list[dict[str, Any]] = []
        total = 0
        for tool in tools:
            total += 1
            native = self.convert_tool(tool)
            if native is None:
                continue
            if not self.validate_tool(native):
                logger.warning("Invalid tool format for %s: %r", self.provider_name, native)
                continue
            converted.append(native)
        logger.debug(
            "Converted %d/%d tool(s) for provider %s", len(converted), total, self.provider_name
        )
        return converted

    def _to_native(self, definition: ToolDefinition) -> dict[str, Any]:
        raise NotImplementedError


def _function_wrapper(definition: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": copy.deepcopy(definition.input_schema),
        },
    }


def _has_text(mapping: Mapping[str, Any], key: str) -> bool:
    value = mapping.get(key)
    return isinstance(value, str) and bool(value.strip())


# ---------------------------------------------------------------------------
# Concrete converters
# ---------------------------------------------------------------------------


class OllamaToolConverter(_BaseConverter):
    """Ollama native ``/api/chat`` function tools."""

    provider_name = "ollama"

    def _to_native(self, definition: ToolDefinition) -> dict[str, Any]:
        return _function_wrapper(definition)

    def validate_tool(self, tool: Mapping[str, Any]) -> bool:
        function = tool.get("function")
        if not isinstance(function, Mapping):
            return False
        return _has_text(function, "name") and _has_text(function, "description")

    def convert_tool_result(self, result: Mapping[str, Any]) -> ToolResult:
        native = copy.deepcopy(dict(result))
        return ToolResult(
            call_id=native.get("tool_call_id"),
            name=str(native.get("tool_name") or native.get("name") or ""),
            content=str(native.get("content", "")),
            is_error=bool(native.get("error", False)),
        )


class OpenAIToolConverter(_BaseConverter):
    """OpenAI Chat Completions function tools."""

    provider_name = "openai"

    def _to_native(self, definition: ToolDefinition) -> dict[str, Any]:
        return _function_wrapper(definition)

    def validate_tool(self, tool: Mapping[str, Any]) -> bool:
        if tool.get("type") != "function":
            return False
        function = tool.get("function")
        if not isinstance(function, Mapping):
            return False
        return _has_text(function, "name") and _has_text(function, "description")

    def convert_tool_result(self, result: Mapping[str, Any]) -> ToolResult:
        native = copy.deepcopy(dict(result))
        return ToolResult(
            call_id=native.get("tool_call_id"),
            name=str(native.get("name") or ""),
            content=str(native.get("content", "")),
            is_error=bool(native.get("error", False)),
        )


class ClaudeToolConverter(_BaseConverter):
    """Anthropic Messages API tools (``input_schema``)."""

    provider_name = "claude"

    def _to_native(self, definition: ToolDefinition) -> dict[str, Any]:
        return {
            "name": definition.name,
            "description": definition.description,
            "input_schema": copy.deepcopy(definition.input_schema),
        }

    def validate_tool(self, tool: Mapping[str, Any]) -> bool:
        return (
            _has_text(tool, "name")
            and _has_text(tool, "description")
            and isinstance(tool.get("input_schema"), Mapping)
        )

    def convert_tool_result(self, result: Mapping[str, Any]) -> ToolResult:
        content = result.get("content", "")
        if isinstance(content, list):
            # tool_result content may itself be a list of text blocks.
            content = "\n".join(
                str(block.get("text", "")) for block in content if isinstance(block, Mapping)
            )
        return ToolResult(
            call_id=result.get("tool_use_id"),
            name=str(result.get("name") or ""),
            content=str(content),
            is_error=bool(result.get("is_error", False)),
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class ToolConverterFactory:
    """Dispenses one cached converter instance per provider name.

    Owned by whoever needs converters (the orchestrator passes its instance
    to the ``ProviderFactory``); there is no module-level cache.
    """

    _CONVERTERS: ClassVar[dict[str, type[_BaseConverter]]] = {
        "ollama": OllamaToolConverter,
        "claude": ClaudeToolConverter,
        "openai": OpenAIToolConverter,
    }

    def __init__(self) -> None:
        self._instances: dict[str, ToolConverter] = {}
        self._lock = threading.Lock()

    @classmethod
    def supported_providers(cls) -> list[str]:
        return list(cls._CONVERTERS)

    @classmethod
    def is_supported(cls, provider_name: str) -> bool:
        return provider_name.strip().lower() in cls._CONVERTERS

    def get_converter(self, provider_name: str) -> ToolConverter:
        """Return the converter for *provider_name* (case-insensitive).

        Raises:
            ValueError: If no converter exists for the provider.
        """
        key = provider_name.strip().lower()
        with self._lock:
            converter = self._instances.get(key)
            if converter is None:
                converter_cls = self._CONVERTERS.get(key)
                if converter_cls is None:
                    raise ValueError(
                        f"Unsupported provider for tool conversion: {provider_name!r}"
                    )
                converter = converter_cls()
                self._instances[key] = converter
            return converter

    def clear_cache(self) -> None:
        with self._lock:
            self._instances.clear()
