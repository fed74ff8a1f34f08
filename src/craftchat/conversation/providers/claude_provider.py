"""
Claude provider using the Anthropic Messages API over ``httpx``.

The system prompt travels in the dedicated ``system`` field, so ``system``
messages in the history are dropped.  Tool requests and results are sent as
``tool_use`` / ``tool_result`` content blocks, and consecutive messages with
the same role are merged because the API expects alternating turns.
"""

from __future__ import annotations

import logging
from typing import Any

from craftchat.conversation.errors import ProtocolError
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import (
    AIResponse,
    BaseProvider,
    ToolCall,
    paired_tool_call_ids,
)

logger = logging.getLogger(__name__)


class ClaudeProvider(BaseProvider):
    """LLM provider backed by Anthropic's Messages API."""

    provider_name = "claude"
    supported_models = (
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-sonnet-4-5",
        "claude-haiku-4-5",
    )

    def configuration_problem(self) -> str | None:
        problem = super().configuration_problem()
        if problem is None and not self.settings.has_real_api_key():
            problem = "claude: no API key configured"
        return problem

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.settings.api_key,
            "anthropic-version": getattr(self.settings, "anthropic_version", "2023-06-01"),
        }

    def _convert_messages(self, history: list[ChatMessage]) -> list[dict[str, Any]]:
        paired = paired_tool_call_ids(history)
        messages: list[dict[str, Any]] = []

        for message in history:
            if message.role == "system":
                continue

            blocks: list[dict[str, Any]] = []
            if message.role == "tool":
                role = "user"
                if message.tool_call_id in paired:
                    blocks.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": message.tool_call_id,
                            "content": message.content,
                        }
                    )
                elif message.content.strip():
                    blocks.append({"type": "text", "text": message.content})
            elif message.role == "assistant":
                role = "assistant"
                if message.content.strip():
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    if call.id in paired:
                        blocks.append(
                            {
                                "type": "tool_use",
                                "id": call.id,
                                "name": call.name,
                                "input": call.arguments,
                            }
                        )
            else:
                role = "user"
                if message.content.strip():
                    blocks.append({"type": "text", "text": message.content})

            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        # The conversation must open with a user turn.
        while messages and messages[0]["role"] != "user":
            messages.pop(0)
        return messages

    async def _send(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        tools: list[dict[str, Any]],
        max_tokens: int | None,
    ) -> AIResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.settings.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(history),
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = {"type": "auto"}

        data = await self._post_json("/messages", payload)
        return self._parse_response(data)

    def _parse_response(self, data: dict[str, Any]) -> AIResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProtocolError(f"Claude response has no content blocks: {data!r}")

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for index, block in enumerate(blocks):
            if not isinstance(block, dict):
                raise ProtocolError(f"Claude content block is not an object: {block!r}")
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=str(block.get("id") or f"call_{index}"),
                        name=block.get("name", ""),
                        arguments=block["input"] if isinstance(block.get("input"), dict) else {},
                    )
                )
            else:
                logger.debug("Ignoring Claude content block of type %r", block_type)

        return AIResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            provider_name=self.provider_name,
            model=data.get("model") or self.model,
        )
