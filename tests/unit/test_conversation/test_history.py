"""Unit tests for craftchat.conversation.history."""

from __future__ import annotations

import dataclasses
import threading

import pytest

from craftchat.conversation.history import ChatMessage, MessageHistory
from craftchat.conversation.providers.base import ToolCall


# ---------------------------------------------------------------------------
# ChatMessage
# ---------------------------------------------------------------------------


def test_chat_message_is_immutable() -> None:
    msg = ChatMessage.user("hi")
    with pytest.raises(dataclasses.FrozenInstanceError):
        msg.content = "changed"  # type: ignore[misc]


def test_chat_message_factories_set_roles() -> None:
    assert ChatMessage.user("a").role == "user"
    assert ChatMessage.system("b").role == "system"
    assert ChatMessage.assistant("c").role == "assistant"
    tool_msg = ChatMessage.tool("result", tool_call_id="call_1", name="give_item")
    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "call_1"
    assert tool_msg.name == "give_item"


def test_assistant_message_carries_tool_calls() -> None:
    call = ToolCall(id="c1", name="give_item", arguments={"item": "bread"})
    msg = ChatMessage.assistant("", [call])
    assert msg.tool_calls == (call,)
    assert msg.content == ""


# ---------------------------------------------------------------------------
# MessageHistory
# ---------------------------------------------------------------------------


def test_history_rejects_non_positive_length() -> None:
    with pytest.raises(ValueError, match="positive integer"):
        MessageHistory(max_length=0)


def test_history_evicts_oldest_past_bound() -> None:
    history = MessageHistory(max_length=3)
    for i in range(5):
        history.add(ChatMessage.user(f"m{i}"))
    assert [m.content for m in history.get_messages()] == ["m2", "m3", "m4"]
    assert len(history) == 3


def test_get_messages_returns_snapshot() -> None:
    history = MessageHistory(max_length=5)
    history.add(ChatMessage.user("one"))
    snapshot = history.get_messages()
    history.add(ChatMessage.user("two"))
    assert len(snapshot) == 1
    snapshot.clear()
    assert history.size() == 2


def test_set_max_length_trims_immediately() -> None:
    history = MessageHistory(max_length=10)
    for i in range(6):
        history.add(ChatMessage.user(str(i)))
    history.set_max_length(2)
    assert [m.content for m in history.get_messages()] == ["4", "5"]


def test_recent_and_last_message() -> None:
    history = MessageHistory()
    assert history.get_last_message() is None
    assert history.is_empty()
    for text in ("a", "b", "c"):
        history.add(ChatMessage.user(text))
    assert [m.content for m in history.get_recent_messages(2)] == ["b", "c"]
    assert history.get_recent_messages(0) == []
    assert history.get_last_message().content == "c"


def test_clear_empties_history() -> None:
    history = MessageHistory()
    history.add(ChatMessage.user("x"))
    history.clear()
    assert history.is_empty()


def test_concurrent_writers_keep_bound_and_order() -> None:
    history = MessageHistory(max_length=50)

    def writer(prefix: str) -> None:
        for i in range(200):
            history.add(ChatMessage.user(f"{prefix}-{i}"))

    threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    messages = history.get_messages()
    assert len(messages) == 50
    # Per-writer order must be preserved in the surviving window.
    for n in range(8):
        seq = [int(m.content.split("-")[1]) for m in messages if m.content.startswith(f"t{n}-")]
        assert seq == sorted(seq)
