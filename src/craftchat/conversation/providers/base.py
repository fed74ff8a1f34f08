"""
Provider abstractions for the craftchat conversation package.

Defines the neutral tool and response types, the ``AIProvider`` Protocol the
orchestrator and detection engine depend on, and ``BaseProvider``, which holds
the plumbing the three concrete backends share:

- settings, retry policy and optional client-side rate limiting;
- tool normalisation through the provider's ``ToolConverter``;
- translation of failures into ``AIResponse.failure`` values;
- the empty-reply apology substitution;
- a lazily created pooled ``httpx.AsyncClient``, closed by ``shutdown()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Protocol, Sequence, runtime_checkable

import httpx

from craftchat.conversation.errors import (
    ErrorKind,
    LLMAPIError,
    LLMConnectionError,
    LLMRateLimitError,
    ProtocolError,
    ToolFormatError,
    classify_error,
)
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.retry import RateLimiter, RetryPolicy, SleepFunc

if TYPE_CHECKING:
    from craftchat.config import ProviderSettings
    from craftchat.conversation.converters import ToolConverter

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "I'm sorry, I'm having trouble generating a response right now. "
    "Could you please try rephrasing your question?"
)

_DEFAULT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


# ---------------------------------------------------------------------------
# Core data types
# ---------------------------------------------------------------------------


@dataclass
class ToolDefinition:
    """Describes a callable tool in the neutral, provider-independent form.

    Attributes:
        name: The tool's unique name (used by the LLM to invoke it).
        description: Human-readable description shown in the LLM's tool prompt.
        input_schema: JSON Schema dict describing the tool's input parameters.
    """

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: dict(_DEFAULT_SCHEMA))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolDefinition:
        """Normalise any accepted tool shape into a ``ToolDefinition``.

        Accepted shapes:

        - neutral ``{"name", "description", "inputSchema"}`` (also
          ``input_schema`` or ``parameters`` for the schema);
        - a function wrapper ``{"type": "function", "function": {...}}`` as
          produced by the Ollama and OpenAI converters.

        Raises:
            ToolFormatError: If the name is missing/blank or the schema is not
                a mapping.
        """
        if not isinstance(data, Mapping):
            raise ToolFormatError(f"Tool must be a mapping, got {type(data).__name__}")
        body: Mapping[str, Any] = data
        wrapped = data.get("function")
        if wrapped is not None:
            if not isinstance(wrapped, Mapping):
                raise ToolFormatError("Tool 'function' wrapper must be a mapping")
            body = wrapped

        name = body.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ToolFormatError(f"Tool has no name: {dict(data)!r}")

        description = body.get("description")
        if not isinstance(description, str) or not description.strip():
            description = f"Tool: {name}"

        schema: Any = None
        for key in ("inputSchema", "input_schema", "parameters"):
            if body.get(key) is not None:
                schema = body[key]
                break
        if schema is None:
            schema = dict(_DEFAULT_SCHEMA)
        elif not isinstance(schema, Mapping):
            raise ToolFormatError(f"Tool {name!r} schema must be a mapping")

        return cls(name=name, description=description, input_schema=dict(schema))

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the neutral dict form."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class ToolCall:
    """A tool invocation requested by the LLM.

    Attributes:
        id: Call ID, unique within one response (used to correlate the result).
        name: Name of the tool to invoke.
        arguments: Parsed JSON arguments dict.
        reasoning: Optional explanation the model gave for the call.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    reasoning: str | None = None


@dataclass
class AIResponse:
    """Result of one provider request.

    When ``successful`` is ``False`` callers ignore ``content`` and read
    ``error_kind`` / ``error_message`` instead.

    Attributes:
        content: Assistant text (may be empty when ``tool_calls`` is set).
        tool_calls: Tool invocations the model requested.
        successful: Whether the request produced a usable reply.
        error_message: Description of the failure, if any.
        error_kind: Taxonomy class of the failure, if any.
        provider_name: Name of the provider that produced the response.
        model: Model that produced the response.
    """

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    successful: bool = True
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    provider_name: str = ""
    model: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @classmethod
    def failure(
        cls,
        message: str,
        kind: ErrorKind,
        provider_name: str = "",
        model: str = "",
    ) -> AIResponse:
        return cls(
            content="",
            successful=False,
            error_message=message,
            error_kind=kind,
            provider_name=provider_name,
            model=model,
        )


# ---------------------------------------------------------------------------
# AIProvider Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class AIProvider(Protocol):
    """Protocol for the LLM backends used by the orchestrator and detector.

    Implementations never raise for provider failures; they return an
    ``AIResponse`` with ``successful=False`` and an ``error_kind``.
    """

    provider_name: str

    @property
    def model(self) -> str: ...

    @property
    def temperature(self) -> float: ...

    async def chat(self, history: Sequence[ChatMessage], system_prompt: str) -> AIResponse:
        """Equivalent to ``chat_with_tools(history, system_prompt, [])``."""
        ...

    async def chat_with_tools(
        self,
        history: Sequence[ChatMessage],
        system_prompt: str,
        tools: Sequence[ToolDefinition | Mapping[str, Any]],
    ) -> AIResponse:
        """Send the conversation plus tool definitions and parse the reply."""
        ...

    async def test_connection(self) -> bool: ...

    def supports_native_tools(self) -> bool: ...

    def configure(self, settings: ProviderSettings) -> None: ...

    async def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers shared by the concrete providers
# ---------------------------------------------------------------------------


def paired_tool_call_ids(history: Sequence[ChatMessage]) -> set[str]:
    """Return ids of tool calls whose request and result are both in *history*.

    Providers with strict tool-message correlation (Claude, OpenAI) only emit
    native tool-call/tool-result structures for these ids; anything left
    unpaired by history eviction is sent as plain text instead.
    """
    requested: set[str] = set()
    answered: set[str] = set()
    for message in history:
        if message.role == "assistant":
            requested.update(call.id for call in message.tool_calls)
        elif message.role == "tool" and message.tool_call_id:
            if message.tool_call_id in requested:
                answered.add(message.tool_call_id)
    return answered


class BaseProvider:
    """Shared implementation of the ``AIProvider`` contract.

    Subclasses set ``provider_name``/``supported_models`` and implement
    ``_send``, which performs exactly one HTTP attempt and raises the
    ``craftchat.conversation.errors`` exceptions on failure.

    Args:
        settings: The provider's connection settings.
        converter: Tool converter for this provider's native format.
        transport: Optional ``httpx`` transport (tests use
            ``httpx.MockTransport``).
        sleep: Optional sleep coroutine for the retry backoff.
    """

    provider_name: ClassVar[str] = "base"
    supported_models: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        settings: ProviderSettings,
        converter: ToolConverter,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.converter = converter
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._retired_clients: list[httpx.AsyncClient] = []
        self.configure(settings)

    # ------------------------------------------------------------------
    # Configuration and accessors
    # ------------------------------------------------------------------

    def configure(self, settings: ProviderSettings) -> None:
        """Apply *settings*; a pooled client built for the old settings is dropped."""
        self.settings = settings
        self.retry_policy = RetryPolicy(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            sleep=self._sleep,
        )
        self.rate_limiter = (
            RateLimiter(settings.calls_per_minute) if settings.calls_per_minute else None
        )
        if self._client is not None:
            self._retired_clients.append(self._client)
            self._client = None
        logger.debug(
            "%s provider configured: model=%s base_url=%s",
            self.provider_name,
            settings.model,
            settings.base_url,
        )

    @property
    def model(self) -> str:
        return self.settings.model

    @property
    def temperature(self) -> float:
        return self.settings.temperature

    def supports_native_tools(self) -> bool:
        return True

    def configuration_problem(self) -> str | None:
        """Return a description of what is missing from the settings, or ``None``."""
        if not self.settings.model:
            return f"{self.provider_name}: no model configured"
        if not self.settings.base_url:
            return f"{self.provider_name}: no base URL configured"
        return None

    def provider_info(self) -> dict[str, Any]:
        return {
            "provider": self.provider_name,
            "model": self.model,
            "base_url": self.settings.base_url,
            "temperature": self.temperature,
            "timeout_seconds": self.settings.timeout_seconds,
            "max_retries": self.settings.max_retries,
            "supports_native_tools": self.supports_native_tools(),
        }

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def chat(self, history: Sequence[ChatMessage], system_prompt: str) -> AIResponse:
        return await self.chat_with_tools(history, system_prompt, [])

    async def chat_with_tools(
        self,
        history: Sequence[ChatMessage],
        system_prompt: str,
        tools: Sequence[ToolDefinition | Mapping[str, Any]],
        max_tokens: int | None = None,
    ) -> AIResponse:
        """Send one request (with retries) and return the parsed response.

        Never raises for provider failures: the final failure is returned as
        ``AIResponse.failure`` carrying the classified ``ErrorKind``.
        """
        problem = self.configuration_problem()
        if problem is not None:
            logger.error("Cannot send request: %s", problem)
            return AIResponse.failure(
                problem, ErrorKind.CONFIGURATION, self.provider_name, self.model
            )

        native_tools: list[dict[str, Any]] = []
        if tools and self.supports_native_tools():
            native_tools = self.converter.convert_tools(tools)

        logger.debug(
            "%s request: model=%s, messages=%d, tools=%d",
            self.provider_name,
            self.model,
            len(history),
            len(native_tools),
        )

        async def attempt() -> AIResponse:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            return await self._send(list(history), system_prompt, native_tools, max_tokens)

        try:
            response = await self.retry_policy.run(
                attempt, description=f"{self.provider_name} request"
            )
        except Exception as exc:
            kind = classify_error(exc)
            return AIResponse.failure(str(exc), kind, self.provider_name, self.model)

        if not response.tool_calls and not response.content.strip():
            logger.warning("%s returned empty content; substituting apology", self.provider_name)
            response.content = APOLOGY_MESSAGE

        logger.debug(
            "%s response: chars=%d, tool_calls=%d",
            self.provider_name,
            len(response.content),
            len(response.tool_calls),
        )
        return response

    async def test_connection(self) -> bool:
        """Send a minimal "Hello" request and report whether it succeeded."""
        response = await self.chat_with_tools(
            [ChatMessage.user("Hello")],
            "You are a helpful assistant.",
            [],
            max_tokens=10,
        )
        if not response.successful:
            logger.warning(
                "%s connection test failed: %s", self.provider_name, response.error_message
            )
        return response.successful

    async def shutdown(self) -> None:
        """Close pooled HTTP connections."""
        clients = [*self._retired_clients, self._client]
        self._retired_clients = []
        self._client = None
        for client in clients:
            if client is not None:
                await client.aclose()
        logger.debug("%s provider shut down", self.provider_name)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def _send(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        tools: list[dict[str, Any]],
        max_tokens: int | None,
    ) -> AIResponse:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url.rstrip("/"),
                headers=self._headers(),
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON object.

        Raises:
            LLMConnectionError: On network failure or timeout.
            LLMRateLimitError: On HTTP 429.
            LLMAPIError: On any other non-2xx status.
            ProtocolError: If the body is not a JSON object.
        """
        client = self._http_client()
        try:
            resp = await client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise LLMConnectionError(f"{self.provider_name} request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise LLMConnectionError(
                f"Could not connect to {self.provider_name} endpoint: {exc}"
            ) from exc

        if resp.status_code == 429:
            raise LLMRateLimitError(f"{self.provider_name} rate limit exceeded: {resp.text}")
        if resp.status_code >= 400:
            raise LLMAPIError(
                f"{self.provider_name} API returned status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"{self.provider_name} returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"{self.provider_name} returned a non-object JSON body")
        return data
