"""
ConversationOrchestrator: the bounded tool-calling loop for craftchat.

One user turn runs::

    BUILD_REQUEST -> SEND -> PARSE_RESPONSE -> EXECUTE_TOOLS -> BUILD_REQUEST ...
                                            \\-> FINAL_RESPONSE

for at most ``max_tool_calls + 1`` provider requests.  Provider failures come
back as ``AIResponse`` values (the provider has already retried), tool
failures are written into history as ``tool`` messages, and the caller always
receives a string, never an exception.

The orchestrator owns every piece of long-lived state the turn needs: the
per-participant and global ``MessageHistory`` objects, the provider factory,
the tool-definition cache and the detection engine.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from craftchat.conversation.detection import DetectionResult, ResponseDetectionEngine
from craftchat.conversation.errors import ConfigurationError, ToolExecutionError
from craftchat.conversation.history import ChatMessage, MessageHistory
from craftchat.conversation.providers.base import AIProvider, BaseProvider, ToolCall, ToolDefinition
from craftchat.conversation.providers.factory import ProviderFactory
from craftchat.conversation.tools.backend import ToolBackend, ToolResult
from craftchat.conversation.tools.cache import TTLCache

if TYPE_CHECKING:
    from craftchat.config import Settings

logger = logging.getLogger(__name__)

TECHNICAL_DIFFICULTIES_MESSAGE = (
    "I'm sorry, but I'm currently experiencing technical difficulties connecting "
    "to my AI services. Please try again later."
)
TOOL_LIMIT_MESSAGE = "I've made several tool calls but let me summarize what I found."

STARTUP_PARTICIPANT = "server"

_DEFINITIONS_KEY = "definitions"


class ConversationOrchestrator:
    """Runs conversation turns against the active provider and tool backend.

    Attributes:
        settings: Current application settings.
        tool_backend: Where tool calls are executed, or ``None`` for chat only.
        providers: Factory that creates and caches provider instances.
        provider: The active provider.
        detection: The response detection engine.
    """

    def __init__(
        self,
        settings: Settings,
        tool_backend: ToolBackend | None = None,
        provider_factory: ProviderFactory | None = None,
        detection: ResponseDetectionEngine | None = None,
        tool_cache: TTLCache[Any] | None = None,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            settings: Validated application settings.
            tool_backend: Tool executor; ``None`` disables tools.
            provider_factory: Factory to obtain providers from (a new one is
                created if omitted).
            detection: Detection engine to use (built from *settings* if
                omitted).
            tool_cache: Cache for tool definitions and converted tool lists.

        Raises:
            ConfigurationError: If the primary provider is not supported.
        """
        self.settings = settings
        self.tool_backend = tool_backend
        self.providers = provider_factory or ProviderFactory()
        self._tool_cache: TTLCache[Any] = tool_cache or TTLCache(
            ttl=settings.tools.cache_ttl_seconds
        )
        self._global_history = MessageHistory(settings.ai.max_context_length)
        self._histories: dict[str, MessageHistory] = {}
        self._histories_lock = threading.Lock()
        self._stats = {
            "turns": 0,
            "provider_requests": 0,
            "provider_failures": 0,
            "tool_calls": 0,
            "tool_failures": 0,
            "tool_limit_reached": 0,
        }
        self._stats_lock = threading.Lock()

        self.provider: BaseProvider = self._build_provider(settings.ai.provider)
        self.detection = detection or ResponseDetectionEngine(
            settings.chat.detection,
            agent_name=settings.ai.agent_name,
            trigger_prefix=settings.resolved_trigger_prefix,
            detection_provider=self._detection_provider(),
        )

    # ------------------------------------------------------------------
    # Provider wiring
    # ------------------------------------------------------------------

    def _build_provider(self, name: str) -> BaseProvider:
        provider = self.providers.get_provider(name, self.settings.provider_settings(name))
        logger.info("Active provider: %s (model=%s)", provider.provider_name, provider.model)
        return provider

    def _detection_provider(self) -> AIProvider | None:
        detection = self.settings.chat.detection
        if not detection.intelligent_detection:
            logger.info("Intelligent detection disabled; using pattern detection only")
            return None
        name = detection.detection_provider
        try:
            section = self.settings.provider_settings(name)
        except ConfigurationError as exc:
            logger.warning("%s; falling back to pattern detection only", exc)
            return None
        problem = self.providers.validate_provider(name, section)
        if problem is not None:
            logger.warning(
                "Detection provider unavailable (%s); falling back to pattern detection only",
                problem,
            )
            return None
        return self.providers.get_provider(name, section)

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _participant_history(self, participant: str) -> MessageHistory:
        with self._histories_lock:
            history = self._histories.get(participant)
            if history is None:
                history = MessageHistory(self.settings.ai.max_context_length)
                self._histories[participant] = history
            return history

    def history_for(self, participant: str) -> MessageHistory:
        """Return the history used to build requests for *participant*."""
        if self.settings.chat.monitor_all_chat:
            return self._global_history
        return self._participant_history(participant)

    def _record(self, participant: str, message: ChatMessage) -> None:
        self._participant_history(participant).add(message)
        self._global_history.add(message)

    def clear_history(self, participant: str | None = None) -> None:
        """Clear one participant's history, or every history when *participant* is None."""
        if participant is None:
            with self._histories_lock:
                self._histories.clear()
            self._global_history.clear()
            logger.info("Cleared all conversation history")
            return
        with self._histories_lock:
            history = self._histories.pop(participant, None)
        if history is not None:
            logger.info("Cleared conversation history for %s", participant)

    def _strip_trigger_prefix(self, message: str) -> str:
        prefix = self.settings.resolved_trigger_prefix
        if prefix and message.lower().startswith(prefix.lower()):
            stripped = message[len(prefix):].strip()
            if stripped:
                return stripped
        return message

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _tool_definitions(self) -> list[ToolDefinition]:
        if self.tool_backend is None:
            return []
        definitions = self._tool_cache.get(_DEFINITIONS_KEY)
        if definitions is not None:
            return definitions
        try:
            definitions = await self.tool_backend.list_tools()
        except Exception as exc:
            logger.warning("Failed to load tools from backend: %s", exc)
            return []
        self._tool_cache.put(_DEFINITIONS_KEY, definitions)
        return definitions

    async def _tools_for(self, provider: BaseProvider) -> list[dict[str, Any]]:
        """Return the provider-native tool list, or ``[]`` when tools are unavailable."""
        if self.tool_backend is None or not provider.supports_native_tools():
            return []
        key = f"converted:{provider.provider_name}"
        converted = self._tool_cache.get(key)
        if converted is not None:
            return converted
        definitions = await self._tool_definitions()
        if not definitions:
            return []
        converter = self.providers.converters.get_converter(provider.provider_name)
        converted = converter.convert_tools(definitions)
        self._tool_cache.put(key, converted)
        logger.info(
            "Converted %d/%d tool(s) for provider %s",
            len(converted),
            len(definitions),
            provider.provider_name,
        )
        return converted

    async def _execute_tool(self, call: ToolCall) -> ToolResult:
        """Run one tool call; failures are returned as error results, never raised."""
        self._count("tool_calls")
        timeout = self.settings.tools.call_timeout_seconds

        def failed(reason: str) -> ToolResult:
            self._count("tool_failures")
            logger.warning("Tool %r failed: %s", call.name, reason)
            return ToolResult(
                call_id=call.id,
                name=call.name,
                content=f"Tool execution failed: {reason}",
                is_error=True,
            )

        if self.tool_backend is None:
            return failed("no tool backend is configured")
        if not call.name or not call.name.strip():
            return failed("tool call has no name")
        known = {definition.name for definition in await self._tool_definitions()}
        if known and call.name not in known:
            return failed(f"unknown tool {call.name!r}")

        logger.debug("Dispatching tool: %s(%s)", call.name, call.arguments)
        try:
            result = await asyncio.wait_for(
                self.tool_backend.call_tool(call.name, call.arguments), timeout=timeout
            )
        except asyncio.TimeoutError:
            return failed(f"timed out after {timeout:.1f}s")
        except ToolExecutionError as exc:
            return failed(str(exc))
        except Exception as exc:
            logger.error("Unexpected error from tool %r", call.name, exc_info=True)
            return failed(f"{type(exc).__name__}: {exc}")

        if result.is_error:
            self._count("tool_failures")
        result.call_id = call.id
        return result

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def generate_response(
        self,
        message: str,
        participant: str,
        max_tool_calls: int | None = None,
    ) -> str:
        """Run one conversation turn and return the assistant's reply.

        Args:
            message: The participant's chat line (a trigger prefix is removed).
            participant: Identity whose history the turn belongs to.
            max_tool_calls: Tool-call rounds allowed this turn; defaults to
                ``settings.ai.max_tool_calls``.

        Returns:
            The final assistant text, the tool-limit summary message, or the
            technical-difficulties message if the provider failed.
        """
        cap = self.settings.ai.max_tool_calls if max_tool_calls is None else max_tool_calls
        provider = self.provider
        system_prompt = self.settings.resolved_system_prompt
        self._count("turns")
        self._record(participant, ChatMessage.user(self._strip_trigger_prefix(message)))

        turn_start = time.monotonic()
        for iteration in range(cap + 1):
            tools = await self._tools_for(provider)
            history = self.history_for(participant).get_messages()

            self._count("provider_requests")
            llm_t0 = time.monotonic()
            response = await provider.chat_with_tools(history, system_prompt, tools)
            logger.debug(
                "Provider call %d took %.3fs (tool_calls=%d)",
                iteration + 1,
                time.monotonic() - llm_t0,
                len(response.tool_calls),
            )

            if not response.successful:
                self._count("provider_failures")
                logger.error(
                    "Provider %s failed for %s (%s): %s",
                    response.provider_name or provider.provider_name,
                    participant,
                    response.error_kind.value if response.error_kind else "unknown",
                    response.error_message,
                )
                return TECHNICAL_DIFFICULTIES_MESSAGE

            if not response.tool_calls:
                self._record(participant, ChatMessage.assistant(response.content))
                logger.info(
                    "Turn complete for %s after %d request(s) in %.3fs",
                    participant,
                    iteration + 1,
                    time.monotonic() - turn_start,
                )
                return response.content

            if iteration >= cap:
                break

            self._record(participant, ChatMessage.assistant(response.content, response.tool_calls))
            for call in response.tool_calls:
                result = await self._execute_tool(call)
                self._record(participant, ChatMessage.tool(result.content, call.id, call.name))

        self._count("tool_limit_reached")
        logger.warning("Tool-call limit (%d) reached for %s", cap, participant)
        self._record(participant, ChatMessage.assistant(TOOL_LIMIT_MESSAGE))
        return TOOL_LIMIT_MESSAGE

    # ------------------------------------------------------------------
    # Frontend entry points
    # ------------------------------------------------------------------

    async def should_respond(
        self, sender_id: str, sender_name: str, message: str
    ) -> DetectionResult:
        """Return the detection decision for *message* without acting on it.

        Args:
            sender_id: Stable identifier of the sender.
            sender_name: Display name of the sender.
            message: The raw chat line.

        Returns:
            The ``DetectionResult`` from the detection engine; callers apply
            ``detection.accepts`` to it.
        """
        return await self.detection.analyze_message(sender_id, sender_name, message)

    async def handle_chat_message(
        self, sender_id: str, sender_name: str, message: str
    ) -> tuple[str | None, DetectionResult]:
        """Run detection and, if accepted, a full turn.

        Returns:
            ``(reply, detection)`` where *reply* is ``None`` when the message
            was not addressed to the assistant.
        """
        detection = await self.detection.analyze_message(sender_id, sender_name, message)
        self.detection.add_to_context(sender_id, message)
        if not self.detection.accepts(detection):
            logger.debug(
                "Not responding to %s (%s, confidence=%.2f)",
                sender_name,
                detection.reason,
                detection.confidence,
            )
            return None, detection

        reply = await self.generate_response(message, sender_id)
        self.detection.add_to_context(sender_id, reply, is_ai_response=True)
        return reply, detection

    # ------------------------------------------------------------------
    # Lifecycle and administration
    # ------------------------------------------------------------------

    async def change_provider(self, name: str) -> bool:
        """Switch the active provider if it is configured and reachable."""
        if not ProviderFactory.is_supported(name):
            logger.warning("Cannot switch to unsupported provider %r", name)
            return False
        section = self.settings.provider_settings(name)
        problem = self.providers.validate_provider(name, section)
        if problem is not None:
            logger.warning("Cannot switch to %s: %s", name, problem)
            return False
        candidate = self.providers.get_provider(name, section)
        if not await candidate.test_connection():
            logger.warning("Failed to connect to new provider: %s", name)
            return False
        self.provider = candidate
        self.settings.ai.provider = name.strip().lower()
        logger.info("Successfully changed provider to: %s", name)
        return True

    async def reload_configuration(self, settings: Settings) -> None:
        """Apply new settings, dropping histories, caches and provider instances.

        Raises:
            ConfigurationError: If the new primary provider is not supported.
        """
        logger.info("Reloading conversation configuration...")
        self.settings = settings
        self.clear_history()
        self._global_history.set_max_length(settings.ai.max_context_length)
        self._tool_cache.configure(settings.tools.cache_ttl_seconds)
        self._tool_cache.clear()
        await self.providers.clear_cache()
        self.provider = self._build_provider(settings.ai.provider)
        self.detection.update_settings(
            settings.chat.detection,
            agent_name=settings.ai.agent_name,
            trigger_prefix=settings.resolved_trigger_prefix,
            detection_provider=self._detection_provider(),
        )

    async def run_startup_test(self) -> str:
        """Ask the provider to introduce itself, with a reduced tool-call cap."""
        tools = await self._tool_definitions()
        parts = [
            f"Good morning! The server has just started and I'm {self.settings.ai.agent_name}. ",
            "Please introduce yourself to the players and report on your current capabilities. ",
        ]
        if tools:
            parts.append(f"I have access to {len(tools)} tools for server management. ")
        else:
            parts.append(
                "Note that tools are not currently available, so I'm operating in "
                "basic chat mode only. "
            )
        parts.append(f"I'm powered by {self.provider.provider_name} ({self.provider.model}). ")
        parts.append("Keep your response friendly, brief, and informative. Maximum 2 sentences please.")

        logger.info(
            "Running startup test with provider %s (model=%s)",
            self.provider.provider_name,
            self.provider.model,
        )
        reply = await self.generate_response(
            "".join(parts),
            STARTUP_PARTICIPANT,
            max_tool_calls=self.settings.startup_test.max_tool_calls,
        )
        if reply == TECHNICAL_DIFFICULTIES_MESSAGE:
            logger.warning("Startup test failed: provider did not respond")
        else:
            logger.info("Startup test completed successfully")
        return reply

    def statistics(self) -> dict[str, Any]:
        """Return turn counters, history sizes and provider and detection state.

        Returns:
            A JSON-serialisable dict, as served by ``GET /stats``.
        """
        with self._stats_lock:
            stats: dict[str, Any] = dict(self._stats)
        with self._histories_lock:
            stats["active_participants"] = len(self._histories)
        stats["global_history_size"] = self._global_history.size()
        stats["tools_enabled"] = self.tool_backend is not None
        stats["provider"] = self.provider.provider_info()
        stats["detection"] = self.detection.statistics()
        stats["cached_providers"] = self.providers.cache_size()
        return stats

    async def shutdown(self) -> None:
        """Drop all in-memory state and close provider and backend connections."""
        logger.info("Shutting down conversation orchestrator...")
        self.clear_history()
        self.detection.clear_cache()
        self.detection.clear_context()
        self._tool_cache.clear()
        await self.providers.clear_cache()
        close = getattr(self.tool_backend, "close", None)
        if close is not None:
            await close()
