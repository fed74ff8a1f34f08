"""
Chat messages and bounded conversation history.

``MessageHistory`` is shared by every turn that touches the same scope (a
participant or the whole chat), and those turns may run on the event loop or
on frontend worker threads, so all mutation happens under a
``threading.Lock`` and reads hand out snapshot copies.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from craftchat.conversation.providers.base import ToolCall

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "system", "tool"]

DEFAULT_MAX_LENGTH = 50


@dataclass(frozen=True)
class ChatMessage:
    """A single immutable message in a conversation.

    Attributes:
        role: One of ``"user"``, ``"assistant"``, ``"system"``, ``"tool"``.
        content: Message text (may be empty for an assistant tool preamble).
        timestamp: Unix time the message was created.
        tool_calls: Calls requested by the assistant in this message.
        tool_call_id: For ``tool`` messages, the id of the call answered.
        name: For ``tool`` messages, the tool that produced the content.
    """

    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role="user", content=content)

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role="system", content=content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()
    ) -> ChatMessage:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(
        cls, content: str, tool_call_id: str | None = None, name: str | None = None
    ) -> ChatMessage:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


class MessageHistory:
    """Bounded FIFO of ``ChatMessage`` objects.

    Appending past ``max_length`` evicts the oldest messages.  Safe to use from
    several threads and tasks at once.

    Args:
        max_length: Maximum number of messages retained. Must be positive.
    """

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if max_length <= 0:
            raise ValueError("max_length must be a positive integer.")
        self._max_length = max_length
        self._messages: deque[ChatMessage] = deque()
        self._lock = threading.Lock()

    @property
    def max_length(self) -> int:
        return self._max_length

    def set_max_length(self, max_length: int) -> None:
        """Change the bound, trimming immediately if the history is now too long."""
        if max_length <= 0:
            raise ValueError("max_length must be a positive integer.")
        with self._lock:
            self._max_length = max_length
            self._trim()

    def add(self, message: ChatMessage) -> None:
        """Append *message*, evicting the oldest entries past the bound."""
        with self._lock:
            self._messages.append(message)
            self._trim()

    def _trim(self) -> None:
        while len(self._messages) > self._max_length:
            dropped = self._messages.popleft()
            logger.debug("History full, evicted oldest %s message", dropped.role)

    def get_messages(self) -> list[ChatMessage]:
        """Return a snapshot copy of the messages, oldest first."""
        with self._lock:
            return list(self._messages)

    def get_recent_messages(self, count: int) -> list[ChatMessage]:
        """Return up to *count* of the newest messages, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            return list(self._messages)[-count:]

    def get_last_message(self) -> ChatMessage | None:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._messages)

    def is_empty(self) -> bool:
        return self.size() == 0

    def __len__(self) -> int:
        return self.size()
