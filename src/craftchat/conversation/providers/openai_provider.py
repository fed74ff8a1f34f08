"""
OpenAI provider using ``openai.AsyncOpenAI``.

The SDK's own retries are disabled (``max_retries=0``) so the shared
``RetryPolicy`` is the only retry loop; SDK errors are mapped onto the
craftchat exception hierarchy before the policy classifies them.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from craftchat.conversation.errors import (
    LLMAPIError,
    LLMConnectionError,
    LLMRateLimitError,
    ProtocolError,
)
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import (
    AIResponse,
    BaseProvider,
    ToolCall,
    paired_tool_call_ids,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    """LLM provider backed by the OpenAI Chat Completions API.

    Attributes:
        organization: Optional ``OpenAI-Organization`` header value.
    """

    provider_name = "openai"
    supported_models = (
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._openai_client: AsyncOpenAI | None = None
        self._retired_openai: list[AsyncOpenAI] = []
        super().__init__(*args, **kwargs)

    @property
    def organization(self) -> str | None:
        org = getattr(self.settings, "organization", "") or ""
        if not org or org.startswith("your-"):
            return None
        return org

    def configure(self, settings: Any) -> None:
        super().configure(settings)
        # Rebuilt lazily with the new credentials; the old one is closed on shutdown.
        if self._openai_client is not None:
            self._retired_openai.append(self._openai_client)
        self._openai_client = None

    def configuration_problem(self) -> str | None:
        problem = super().configuration_problem()
        if problem is None and not self.settings.has_real_api_key():
            problem = "openai: no API key configured"
        return problem

    def _get_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(
                base_url=self.settings.base_url,
                api_key=self.settings.api_key,
                organization=self.organization,
                timeout=self.settings.timeout_seconds,
                max_retries=0,
            )
        return self._openai_client

    def _convert_messages(
        self, history: list[ChatMessage], system_prompt: str
    ) -> list[dict[str, Any]]:
        paired = paired_tool_call_ids(history)
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for message in history:
            if message.role == "tool":
                if message.tool_call_id in paired:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": message.tool_call_id,
                            "content": message.content,
                        }
                    )
                else:
                    messages.append({"role": "user", "content": message.content})
            elif message.role == "assistant" and message.tool_calls:
                calls = [call for call in message.tool_calls if call.id in paired]
                entry: dict[str, Any] = {"role": "assistant", "content": message.content or None}
                if calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in calls
                    ]
                elif not message.content:
                    continue
                messages.append(entry)
            else:
                messages.append({"role": message.role, "content": message.content})
        return messages

    async def _send(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        tools: list[dict[str, Any]],
        max_tokens: int | None,
    ) -> AIResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(history, system_prompt),
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await self._get_client().chat.completions.create(**kwargs)
        except RateLimitError as exc:
            raise LLMRateLimitError(f"Rate limit exceeded: {exc}") from exc
        except APIConnectionError as exc:
            raise LLMConnectionError(f"Could not connect to OpenAI endpoint: {exc}") from exc
        except APIStatusError as exc:
            raise LLMAPIError(
                f"OpenAI API returned status {exc.status_code}: {exc}",
                status_code=exc.status_code,
                body=str(exc.body or ""),
            ) from exc

        if not response.choices:
            raise ProtocolError("OpenAI response contained no choices")
        message = response.choices[0].message

        tool_calls: list[ToolCall] = []
        for index, tc in enumerate(message.tool_calls or []):
            try:
                args = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning(
                    "Could not parse arguments for tool call %s: %r",
                    tc.function.name,
                    tc.function.arguments,
                )
                args = {}
            tool_calls.append(
                ToolCall(
                    id=tc.id or f"call_{index}",
                    name=tc.function.name,
                    arguments=args if isinstance(args, dict) else {},
                )
            )

        return AIResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            provider_name=self.provider_name,
            model=response.model or self.model,
        )

    def provider_info(self) -> dict[str, Any]:
        info = super().provider_info()
        info["organization"] = self.organization
        return info

    async def shutdown(self) -> None:
        clients = [*self._retired_openai, self._openai_client]
        self._retired_openai = []
        self._openai_client = None
        for client in clients:
            if client is not None:
                await client.close()
        await super().shutdown()
