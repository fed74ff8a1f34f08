"""Unit tests for the shared provider behaviour in craftchat.conversation.providers.base.

``OllamaProvider`` is used as the concrete subclass; HTTP is served by an
``httpx.MockTransport``.
"""

from __future__ import annotations

import json
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from craftchat.config import OllamaSettings
from craftchat.conversation.converters import OllamaToolConverter
from craftchat.conversation.errors import ErrorKind
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.providers.base import (
    APOLOGY_MESSAGE,
    AIProvider,
    AIResponse,
    ToolCall,
    ToolDefinition,
    paired_tool_call_ids,
)
from craftchat.conversation.providers.ollama_provider import OllamaProvider


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _reply(content: str = "Hi there!") -> dict[str, Any]:
    return {"model": "llama3.1", "message": {"role": "assistant", "content": content}}


def _provider(
    handler: Callable[[httpx.Request], httpx.Response], **overrides: Any
) -> tuple[OllamaProvider, list[float]]:
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    settings = OllamaSettings(**overrides)
    provider = OllamaProvider(
        settings,
        OllamaToolConverter(),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return provider, sleeps


# ---------------------------------------------------------------------------
# ToolDefinition / AIResponse
# ---------------------------------------------------------------------------


def test_tool_definition_round_trips_neutral_dict() -> None:
    tool = ToolDefinition("weather", "Current weather.", {"type": "object", "properties": {}})
    assert ToolDefinition.from_dict(tool.to_dict()) == tool


def test_failure_response_fields() -> None:
    resp = AIResponse.failure("down", ErrorKind.TRANSPORT, "ollama", "llama3.1")
    assert resp.successful is False
    assert resp.content == ""
    assert resp.error_kind is ErrorKind.TRANSPORT
    assert resp.has_tool_calls is False


def test_paired_tool_call_ids_ignores_unanswered_calls() -> None:
    history = [
        ChatMessage.user("give me bread"),
        ChatMessage.assistant(
            "", [ToolCall("c1", "give_item"), ToolCall("c2", "give_item")]
        ),
        ChatMessage.tool("ok", tool_call_id="c1", name="give_item"),
        ChatMessage.tool("orphan", tool_call_id="c9", name="give_item"),
    ]
    assert paired_tool_call_ids(history) == {"c1"}


def test_provider_implements_protocol() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200, json=_reply()))
    assert isinstance(provider, AIProvider)


# ---------------------------------------------------------------------------
# chat / chat_with_tools
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_chat_equals_chat_with_empty_tools() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_reply("Same answer"))

    provider, _ = _provider(handler)
    history = [ChatMessage.user("hi")]

    plain = await provider.chat(history, "be brief")
    with_tools = await provider.chat_with_tools(history, "be brief", [])

    assert plain == with_tools
    assert bodies[0] == bodies[1]
    assert "tools" not in bodies[0]


@pytest.mark.anyio
async def test_empty_reply_becomes_apology() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200, json=_reply("   ")))
    response = await provider.chat([ChatMessage.user("hi")], "")
    assert response.successful is True
    assert response.content == APOLOGY_MESSAGE


@pytest.mark.anyio
async def test_missing_model_is_configuration_failure() -> None:
    handler = MagicMock()
    provider, _ = _provider(handler, model="")

    response = await provider.chat([ChatMessage.user("hi")], "")

    assert response.successful is False
    assert response.error_kind is ErrorKind.CONFIGURATION
    handler.assert_not_called()


@pytest.mark.anyio
async def test_unauthorised_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(401, text="unauthorised")

    provider, sleeps = _provider(handler, max_retries=3)
    response = await provider.chat([ChatMessage.user("hi")], "")

    assert calls == 1
    assert sleeps == []
    assert response.successful is False
    assert response.error_kind is ErrorKind.NON_RECOVERABLE


@pytest.mark.anyio
async def test_server_errors_are_retried_with_backoff() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=_reply("finally"))

    provider, sleeps = _provider(handler, max_retries=3, retry_base_delay_seconds=0.5)
    response = await provider.chat([ChatMessage.user("hi")], "")

    assert response.content == "finally"
    assert sleeps == [0.5, 1.0]


@pytest.mark.anyio
async def test_rate_limit_exhaustion_returns_rate_limit_failure() -> None:
    provider, sleeps = _provider(
        lambda request: httpx.Response(429, text="slow down"), max_retries=2
    )
    response = await provider.chat([ChatMessage.user("hi")], "")
    assert response.error_kind is ErrorKind.RATE_LIMIT
    assert len(sleeps) == 1


@pytest.mark.anyio
async def test_connection_error_is_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider, _ = _provider(handler, max_retries=1)
    response = await provider.chat([ChatMessage.user("hi")], "")
    assert response.error_kind is ErrorKind.TRANSPORT


@pytest.mark.anyio
async def test_invalid_json_is_protocol_failure() -> None:
    provider, sleeps = _provider(lambda request: httpx.Response(200, text="<html>"))
    response = await provider.chat([ChatMessage.user("hi")], "")
    assert response.error_kind is ErrorKind.PROTOCOL
    assert sleeps == []


@pytest.mark.anyio
async def test_rate_limiter_acquired_before_request() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200, json=_reply()))
    provider.rate_limiter = MagicMock()
    provider.rate_limiter.acquire = AsyncMock()

    await provider.chat([ChatMessage.user("hi")], "")

    provider.rate_limiter.acquire.assert_awaited_once()


def test_calls_per_minute_enables_rate_limiter() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200), calls_per_minute=30)
    assert provider.rate_limiter is not None
    assert provider.rate_limiter.calls_per_minute == 30


# ---------------------------------------------------------------------------
# test_connection / configure / shutdown
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_test_connection_sends_small_hello() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_reply())

    provider, _ = _provider(handler)
    assert await provider.test_connection() is True
    assert bodies[0]["messages"][-1] == {"role": "user", "content": "Hello"}
    assert bodies[0]["options"]["num_predict"] == 10


@pytest.mark.anyio
async def test_test_connection_reports_failure() -> None:
    provider, _ = _provider(lambda request: httpx.Response(404), max_retries=1)
    assert await provider.test_connection() is False


@pytest.mark.anyio
async def test_configure_replaces_client_and_shutdown_closes_all() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200, json=_reply()))
    await provider.chat([ChatMessage.user("hi")], "")
    old_client = provider._client

    provider.configure(OllamaSettings(model="mistral"))

    assert provider.model == "mistral"
    assert provider._client is None
    await provider.shutdown()
    assert old_client is not None and old_client.is_closed


def test_provider_info_reports_settings() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200), temperature=0.2)
    info = provider.provider_info()
    assert info["provider"] == "ollama"
    assert info["temperature"] == 0.2
    assert info["supports_native_tools"] is True
