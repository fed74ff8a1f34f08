"""
Ollama provider using the native ``/api/chat`` endpoint over ``httpx``.

Some local models reject tool-enabled requests outright.  When Ollama answers
with "does not support tools" the provider switches tools off for the rest of
the session (``tools_disabled``) and retries the same turn without them.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from craftchat.conversation.errors import LLMAPIError, ProtocolError
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import AIResponse, BaseProvider, ToolCall

if TYPE_CHECKING:
    from craftchat.config import ProviderSettings

logger = logging.getLogger(__name__)

_TOOLS_UNSUPPORTED_MARKER = "does not support tools"


class OllamaProvider(BaseProvider):
    """LLM provider backed by a local Ollama server."""

    provider_name = "ollama"
    supported_models = (
        "llama3.1",
        "llama3.2",
        "llama3.3",
        "mistral",
        "mixtral",
        "qwen2.5",
        "phi3",
        "gemma2",
    )

    tools_disabled = False

    def supports_native_tools(self) -> bool:
        return not self.tools_disabled

    def configure(self, settings: ProviderSettings) -> None:
        """Apply *settings*; switching to another model re-enables tools."""
        previous = getattr(self, "settings", None)
        super().configure(settings)
        if previous is not None and previous.model != settings.model:
            self.reset_tool_support()

    def reset_tool_support(self) -> None:
        """Re-enable tools after a model change."""
        if self.tools_disabled:
            logger.info("Re-enabling tools for Ollama model %s", self.model)
        self.tools_disabled = False

    def provider_info(self) -> dict[str, Any]:
        info = super().provider_info()
        info["tools_disabled"] = self.tools_disabled
        return info

    def _build_payload(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        tools: list[dict[str, Any]],
        max_tokens: int | None,
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for message in history:
            entry: dict[str, Any] = {"role": message.role, "content": message.content}
            if message.role == "assistant" and message.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}}
                    for call in message.tool_calls
                ]
            elif message.role == "tool" and message.name:
                entry["tool_name"] = message.name
            messages.append(entry)

        options: dict[str, Any] = {"temperature": self.temperature}
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": options,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def _send(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        tools: list[dict[str, Any]],
        max_tokens: int | None,
    ) -> AIResponse:
        if self.tools_disabled:
            tools = []
        payload = self._build_payload(history, system_prompt, tools, max_tokens)
        try:
            data = await self._post_json("/chat", payload)
        except LLMAPIError as exc:
            if not tools or _TOOLS_UNSUPPORTED_MARKER not in exc.body.lower():
                raise
            logger.warning(
                "Model %s does not support tools; disabling tools for this session", self.model
            )
            self.tools_disabled = True
            payload = self._build_payload(history, system_prompt, [], max_tokens)
            data = await self._post_json("/chat", payload)
        return self._parse_response(data)

    def _parse_response(self, data: dict[str, Any]) -> AIResponse:
        message = data.get("message")
        if not isinstance(message, dict):
            raise ProtocolError(f"Ollama response has no message object: {data!r}")

        tool_calls: list[ToolCall] = []
        raw_calls = message.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise ProtocolError(f"Ollama tool_calls is not a list: {raw_calls!r}")
        for index, raw in enumerate(raw_calls):
            if not isinstance(raw, dict):
                raise ProtocolError(f"Ollama tool call is not an object: {raw!r}")
            function = raw.get("function") or {}
            if not isinstance(function, dict):
                raise ProtocolError(f"Ollama tool call function is not an object: {raw!r}")
            name = function.get("name")
            if not name:
                logger.warning("Ignoring Ollama tool call without a name: %r", raw)
                continue
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {}
            tool_calls.append(
                ToolCall(
                    id=str(raw.get("id") or f"call_{index}"),
                    name=name,
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )

        return AIResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            provider_name=self.provider_name,
            model=data.get("model") or self.model,
        )
