"""Unit tests for craftchat.conversation.providers.ollama_provider."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from craftchat.config import OllamaSettings
from craftchat.conversation.converters import OllamaToolConverter
from craftchat.conversation.errors import ErrorKind
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import ToolCall, ToolDefinition
from craftchat.conversation.providers.ollama_provider import OllamaProvider

GIVE_ITEM = ToolDefinition(
    name="give_item",
    description="Give an item to a player.",
    input_schema={"type": "object", "properties": {"item": {"type": "string"}}},
)


def _provider(handler: Any, **overrides: Any) -> OllamaProvider:
    async def no_sleep(delay: float) -> None:
        return None

    return OllamaProvider(
        OllamaSettings(**overrides),
        OllamaToolConverter(),
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_request_payload_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "ok"}})

    provider = _provider(handler, temperature=0.3)
    history = [
        ChatMessage.user("give me bread"),
        ChatMessage.assistant("", [ToolCall("c1", "give_item", {"item": "bread"})]),
        ChatMessage.tool("Gave bread", tool_call_id="c1", name="give_item"),
    ]

    await provider.chat_with_tools(history, "You are Steve.", [GIVE_ITEM])

    request = seen[0]
    assert request.url.path == "/api/chat"
    body = json.loads(request.content)
    assert body["model"] == "llama3.1"
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.3}
    assert body["messages"][0] == {"role": "system", "content": "You are Steve."}
    assert body["messages"][2]["tool_calls"] == [
        {"function": {"name": "give_item", "arguments": {"item": "bread"}}}
    ]
    assert body["messages"][3]["tool_name"] == "give_item"
    assert body["tools"][0]["function"]["name"] == "give_item"


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_tool_calls_are_parsed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "model": "llama3.1",
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": "give_item", "arguments": {"item": "bread"}}},
                        {"function": {"name": "weather", "arguments": '{"city": "Spawn"}'}},
                        {"function": {"arguments": {}}},
                    ],
                },
            },
        )

    response = await _provider(handler).chat_with_tools(
        [ChatMessage.user("hi")], "", [GIVE_ITEM]
    )

    assert [c.name for c in response.tool_calls] == ["give_item", "weather"]
    assert response.tool_calls[0].id == "call_0"
    assert response.tool_calls[0].arguments == {"item": "bread"}
    assert response.tool_calls[1].arguments == {"city": "Spawn"}
    assert response.content == ""


@pytest.mark.anyio
async def test_missing_message_is_protocol_error() -> None:
    response = await _provider(lambda r: httpx.Response(200, json={"done": True})).chat(
        [ChatMessage.user("hi")], ""
    )
    assert response.error_kind is ErrorKind.PROTOCOL


# ---------------------------------------------------------------------------
# Tool-support fallback
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_model_without_tool_support_disables_tools_and_resends() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if "tools" in body:
            return httpx.Response(
                400, json={"error": "registry.ollama.ai/library/phi3 does not support tools"}
            )
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "plain"}})

    provider = _provider(handler)
    response = await provider.chat_with_tools([ChatMessage.user("hi")], "", [GIVE_ITEM])

    assert response.content == "plain"
    assert provider.tools_disabled is True
    assert provider.supports_native_tools() is False
    assert len(bodies) == 2
    assert "tools" not in bodies[1]

    # Later turns skip tools without another rejected request.
    await provider.chat_with_tools([ChatMessage.user("again")], "", [GIVE_ITEM])
    assert len(bodies) == 3
    assert "tools" not in bodies[2]

    provider.reset_tool_support()
    assert provider.supports_native_tools() is True


@pytest.mark.anyio
async def test_other_bad_requests_are_not_treated_as_tool_rejection() -> None:
    provider = _provider(lambda r: httpx.Response(400, text="invalid model"))
    response = await provider.chat_with_tools([ChatMessage.user("hi")], "", [GIVE_ITEM])
    assert response.error_kind is ErrorKind.NON_RECOVERABLE
    assert provider.tools_disabled is False


def test_tools_disabled_is_per_instance() -> None:
    first = _provider(lambda r: httpx.Response(200))
    second = _provider(lambda r: httpx.Response(200))
    first.tools_disabled = True
    assert second.supports_native_tools() is True


def test_configuring_another_model_re_enables_tools() -> None:
    provider = _provider(lambda r: httpx.Response(200))
    provider.tools_disabled = True

    provider.configure(OllamaSettings())
    assert provider.supports_native_tools() is False

    provider.configure(OllamaSettings(model="qwen2.5"))
    assert provider.supports_native_tools() is True


@pytest.mark.anyio
@pytest.mark.parametrize("tool_calls", [["oops"], [{"function": "give_item"}], {"id": "x"}])
async def test_malformed_tool_calls_fail_once_as_protocol(tool_calls: Any) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(
            200,
            json={"message": {"role": "assistant", "content": "", "tool_calls": tool_calls}},
        )

    response = await _provider(handler).chat([ChatMessage.user("hi")], "")

    assert response.error_kind is ErrorKind.PROTOCOL
    assert calls == 1
