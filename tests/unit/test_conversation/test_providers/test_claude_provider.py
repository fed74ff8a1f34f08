"""Unit tests for craftchat.conversation.providers.claude_provider."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from craftchat.config import ClaudeSettings
from craftchat.conversation.converters import ClaudeToolConverter
from craftchat.conversation.errors import ErrorKind
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import ToolCall, ToolDefinition
from craftchat.conversation.providers.claude_provider import ClaudeProvider

GIVE_ITEM = ToolDefinition(
    name="give_item",
    description="Give an item to a player.",
    input_schema={"type": "object", "properties": {"item": {"type": "string"}}},
)


def _provider(handler: Any = None, **overrides: Any) -> ClaudeProvider:
    options: dict[str, Any] = {"api_key": "sk-ant-test"}
    options.update(overrides)
    handler = handler or (lambda r: httpx.Response(200, json={"content": []}))
    return ClaudeProvider(
        ClaudeSettings(**options),
        ClaudeToolConverter(),
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("key", ["", "   ", "your-anthropic-key"])
def test_missing_or_placeholder_key_is_a_configuration_problem(key: str) -> None:
    assert _provider(api_key=key).configuration_problem() == "claude: no API key configured"


@pytest.mark.anyio
async def test_no_key_fails_without_request() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"content": []})

    response = await _provider(handler, api_key="").chat([ChatMessage.user("hi")], "")

    assert response.error_kind is ErrorKind.CONFIGURATION
    assert calls == 0


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def test_system_messages_dropped_and_roles_merged() -> None:
    messages = _provider()._convert_messages(
        [
            ChatMessage.system("ignored"),
            ChatMessage.user("one"),
            ChatMessage.user("two"),
            ChatMessage.assistant("reply"),
        ]
    )
    assert messages == [
        {"role": "user", "content": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "reply"}]},
    ]


def test_paired_tool_calls_become_tool_use_and_tool_result_blocks() -> None:
    messages = _provider()._convert_messages(
        [
            ChatMessage.user("give me bread"),
            ChatMessage.assistant("Sure.", [ToolCall("toolu_1", "give_item", {"item": "bread"})]),
            ChatMessage.tool("Gave bread", tool_call_id="toolu_1", name="give_item"),
        ]
    )
    assert messages[1] == {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Sure."},
            {"type": "tool_use", "id": "toolu_1", "name": "give_item", "input": {"item": "bread"}},
        ],
    }
    assert messages[2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "Gave bread"}],
    }


def test_unpaired_tool_result_degrades_to_text() -> None:
    # The matching tool_use was evicted from history.
    messages = _provider()._convert_messages(
        [ChatMessage.tool("Gave bread", tool_call_id="toolu_gone", name="give_item")]
    )
    assert messages == [{"role": "user", "content": [{"type": "text", "text": "Gave bread"}]}]


def test_leading_assistant_turns_are_dropped() -> None:
    messages = _provider()._convert_messages(
        [ChatMessage.assistant("earlier"), ChatMessage.user("now")]
    )
    assert messages[0]["role"] == "user"
    assert len(messages) == 1


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_request_headers_and_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-5-sonnet-20241022",
                "content": [
                    {"type": "text", "text": "Let me "},
                    {"type": "text", "text": "check."},
                    {"type": "tool_use", "id": "toolu_9", "name": "give_item", "input": {"item": "bread"}},
                ],
            },
        )

    provider = _provider(handler, max_tokens=512)
    response = await provider.chat_with_tools(
        [ChatMessage.user("bread please")], "You are Steve.", [GIVE_ITEM]
    )

    request = seen[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "You are Steve."
    assert body["max_tokens"] == 512
    assert body["tool_choice"] == {"type": "auto"}
    assert body["tools"][0]["input_schema"] == GIVE_ITEM.input_schema

    assert response.content == "Let me check."
    assert response.tool_calls == [ToolCall("toolu_9", "give_item", {"item": "bread"})]


@pytest.mark.anyio
async def test_response_without_content_list_is_protocol_failure() -> None:
    provider = _provider(lambda r: httpx.Response(200, json={"type": "message"}))
    response = await provider.chat([ChatMessage.user("hi")], "")
    assert response.error_kind is ErrorKind.PROTOCOL


@pytest.mark.anyio
@pytest.mark.parametrize("block", ["oops", ["text"], None])
async def test_malformed_content_block_fails_once_as_protocol(block: Any) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"content": [block]})

    response = await _provider(handler).chat([ChatMessage.user("hi")], "")

    assert response.error_kind is ErrorKind.PROTOCOL
    assert calls == 1


@pytest.mark.anyio
async def test_tool_use_with_non_object_input_gets_empty_arguments() -> None:
    body = {
        "content": [{"type": "tool_use", "id": "toolu_1", "name": "give_item", "input": "bread"}]
    }
    response = await _provider(lambda r: httpx.Response(200, json=body)).chat(
        [ChatMessage.user("hi")], ""
    )
    assert response.tool_calls == [ToolCall("toolu_1", "give_item", {})]
