"""
Response detection: decides whether a chat line is addressed to the assistant.

Each message goes through up to three steps:

1. **Decision cache** - a normalised form of the text is looked up in a TTL
   cache; a hit is returned with ``method="cached"``.
2. **Pattern stage** - fixed regex classifiers with hard-coded confidences
   (trigger prefix, spam, slash command, name mention, help, question,
   greeting).  A result at or above ``high_confidence_cutoff`` is final.
3. **AI-contextual stage** - for ambiguous messages only, the detection
   provider is asked a YES/NO question that embeds the participant's recent
   context.  Timeouts and unparsable replies fall back to the pattern result.

Callers accept a decision only when ``should_respond`` is true *and* the
confidence reaches ``confidence_threshold``, a separate setting from the
stage-2 cutoff.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import re
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from craftchat.conversation.errors import DetectionError
from craftchat.conversation.history import ChatMessage
from craftchat.conversation.tools.cache import TTLCache

if TYPE_CHECKING:
    from craftchat.config import DetectionSettings
    from craftchat.conversation.providers.base import AIProvider

logger = logging.getLogger(__name__)

DETECTION_SYSTEM_PROMPT = "You are a detection system. Respond only with the requested format."

CACHE_KEY_LENGTH = 50

_SPAM_PATTERN = re.compile(
    r"^[!@#$%^&*()_+\-=\[\]{}|;':\",./<>?~`]+$|^\s*$|^(.+)\1{3,}$", re.DOTALL
)
_COMMAND_PATTERN = re.compile(r"^/[a-zA-Z0-9_-]+.*", re.DOTALL)
_HELP_PATTERN = re.compile(
    r"\b(help|assist|assistance|support|need help|ayuda|ayúdame|apoyo|necesito ayuda)\b",
    re.IGNORECASE,
)
_QUESTION_PATTERN = re.compile(
    r"[¿?]|\b(how|what|when|where|why|who|which|can you|could you|would you|will you"
    r"|do you|are you|is there|cómo|qué|cuándo|dónde|por qué|quién|puedes|podrías)\b",
    re.IGNORECASE,
)
_GREETING_PATTERN = re.compile(
    r"\b(hello|hi|hey|hola|good morning|good afternoon|good evening|buenos días"
    r"|buenas tardes|buenas noches|sup|wassup|greetings|salutations)\b",
    re.IGNORECASE,
)
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


class DetectionMethod(str, enum.Enum):
    PATTERN = "pattern"
    AI_CONTEXTUAL = "ai_contextual"
    CACHED = "cached"


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of detection for one message.

    ``confidence`` is clamped into ``[0.0, 1.0]`` on construction; a NaN
    becomes ``0.0``.
    """

    should_respond: bool
    confidence: float
    reason: str
    method: DetectionMethod = DetectionMethod.PATTERN

    def __post_init__(self) -> None:
        confidence = float(self.confidence)
        if math.isnan(confidence):
            confidence = 0.0
        object.__setattr__(self, "confidence", min(1.0, max(0.0, confidence)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_respond": self.should_respond,
            "confidence": self.confidence,
            "reason": self.reason,
            "method": self.method.value,
        }


def normalize_cache_key(message: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace, truncate."""
    normalized = _NON_ALNUM.sub("", message.lower())
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return normalized[:CACHE_KEY_LENGTH]


class DecisionCache:
    """TTL cache of detection decisions keyed by normalised message text.

    Args:
        ttl_seconds: Lifetime of a cached decision.
        max_entries: Size above which expired (then oldest) entries are pruned.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 100) -> None:
        self._cache: TTLCache[DetectionResult] = TTLCache(ttl=ttl_seconds, max_entries=max_entries)

    def configure(self, ttl_seconds: float, max_entries: int) -> None:
        self._cache.configure(ttl_seconds, max_entries)

    def get(self, message: str) -> DetectionResult | None:
        cached = self._cache.get(normalize_cache_key(message))
        if cached is None:
            return None
        return replace(cached, method=DetectionMethod.CACHED)

    def put(self, message: str, result: DetectionResult) -> None:
        self._cache.put(normalize_cache_key(message), result)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class ConversationContext:
    """Per-participant ring buffer of recent messages for detection prompts.

    Separate from the orchestrator's ``MessageHistory``: it only ever feeds
    the AI detection stage.
    """

    def __init__(self, size: int = 10) -> None:
        self._size = size
        self._buffers: dict[str, deque[ChatMessage]] = {}
        self._lock = threading.Lock()

    def add(self, participant_id: str, message: str, is_ai_response: bool = False) -> None:
        entry = ChatMessage.assistant(message) if is_ai_response else ChatMessage.user(message)
        with self._lock:
            buffer = self._buffers.get(participant_id)
            if buffer is None:
                buffer = deque(maxlen=self._size)
                self._buffers[participant_id] = buffer
            buffer.append(entry)

    def recent(self, participant_id: str, count: int) -> list[ChatMessage]:
        if count <= 0:
            return []
        with self._lock:
            buffer = self._buffers.get(participant_id)
            return list(buffer)[-count:] if buffer else []

    def clear(self, participant_id: str | None = None) -> None:
        with self._lock:
            if participant_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(participant_id, None)

    def participant_count(self) -> int:
        with self._lock:
            return len(self._buffers)


class ResponseDetectionEngine:
    """Two-stage response detection with a decision cache in front.

    Attributes:
        settings: Detection settings (thresholds, timeouts, cache policy).
        agent_name: Name the assistant answers to.
        trigger_prefix: Literal prefix that always addresses the assistant.
        detection_provider: Provider used by the AI stage, or ``None`` for
            pattern-only detection.
    """

    def __init__(
        self,
        settings: DetectionSettings,
        agent_name: str,
        trigger_prefix: str,
        detection_provider: AIProvider | None = None,
        cache: DecisionCache | None = None,
        context: ConversationContext | None = None,
    ) -> None:
        self.settings = settings
        self.agent_name = agent_name
        self.trigger_prefix = trigger_prefix
        self.detection_provider = detection_provider
        self.cache = cache or DecisionCache(
            settings.cache_duration_minutes * 60.0, settings.cache_max_entries
        )
        self.context = context or ConversationContext(settings.context_size)
        self._stats = {"cache_hits": 0, "pattern_final": 0, "ai_analyses": 0, "ai_failures": 0}
        self._stats_lock = threading.Lock()

    def update_settings(
        self,
        settings: DetectionSettings,
        agent_name: str,
        trigger_prefix: str,
        detection_provider: AIProvider | None,
    ) -> None:
        """Apply new settings; cached decisions and context are dropped."""
        self.settings = settings
        self.agent_name = agent_name
        self.trigger_prefix = trigger_prefix
        self.detection_provider = detection_provider
        self.cache.configure(settings.cache_duration_minutes * 60.0, settings.cache_max_entries)
        self.cache.clear()
        self.context = ConversationContext(settings.context_size)
        logger.info(
            "Detection settings updated: intelligent=%s provider=%s threshold=%.2f",
            settings.intelligent_detection,
            settings.detection_provider,
            settings.confidence_threshold,
        )

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze_message(
        self, sender_id: str, sender_name: str, message: str
    ) -> DetectionResult:
        """Return the detection decision for *message*.

        Never raises for detection failures; the AI stage falls back to the
        pattern result.
        """
        if self.settings.cache_decisions:
            cached = self.cache.get(message)
            if cached is not None:
                self._count("cache_hits")
                logger.debug("Using cached detection decision: %s", cached.reason)
                return cached

        pattern_result = self.pattern_analysis(message)
        if (
            not self.settings.intelligent_detection
            or self.detection_provider is None
            or pattern_result.confidence >= self.settings.high_confidence_cutoff
        ):
            self._count("pattern_final")
            self._remember(message, pattern_result)
            return pattern_result

        self._count("ai_analyses")
        try:
            result = await self._ai_analysis(sender_id, sender_name, message)
        except DetectionError as exc:
            self._count("ai_failures")
            logger.warning("AI detection failed: %s; using pattern result", exc)
            return pattern_result

        self._remember(message, result)
        return result

    def accepts(self, result: DetectionResult) -> bool:
        """Apply the configured acceptance threshold to a final decision.

        Args:
            result: A decision returned by ``analyze_message``.

        Returns:
            True if the decision says to respond and its confidence is at
            least ``confidence_threshold``.
        """
        return result.should_respond and result.confidence >= self.settings.confidence_threshold

    async def should_respond(self, sender_id: str, sender_name: str, message: str) -> bool:
        """Decide whether the assistant should answer *message*.

        Args:
            sender_id: Stable identifier of the sender.
            sender_name: Display name used in the detection prompt.
            message: The raw chat line.

        Returns:
            True if ``analyze_message`` accepts the message.
        """
        result = await self.analyze_message(sender_id, sender_name, message)
        return self.accepts(result)

    def add_to_context(self, sender_id: str, message: str, is_ai_response: bool = False) -> None:
        """Record a line in the sender's recent context for later AI prompts.

        Args:
            sender_id: Participant the line belongs to.
            message: The chat line or assistant reply.
            is_ai_response: True when *message* was produced by the assistant.
        """
        self.context.add(sender_id, message, is_ai_response)

    def clear_context(self, sender_id: str | None = None) -> None:
        """Forget recent lines for *sender_id*, or for everyone if omitted."""
        self.context.clear(sender_id)

    def clear_cache(self) -> None:
        """Drop every cached detection decision."""
        self.cache.clear()
        logger.info("Cleared detection decision cache")

    def statistics(self) -> dict[str, Any]:
        """Return detection counters plus the current configuration.

        Returns:
            A JSON-serialisable dict with the stage counters, cache size,
            tracked participants and active thresholds.
        """
        with self._stats_lock:
            stats: dict[str, Any] = dict(self._stats)
        stats.update(
            intelligent_detection=self.settings.intelligent_detection,
            detection_provider=self.settings.detection_provider,
            cache_entries=len(self.cache),
            participants_in_context=self.context.participant_count(),
            confidence_threshold=self.settings.confidence_threshold,
        )
        return stats

    # ------------------------------------------------------------------
    # Pattern stage
    # ------------------------------------------------------------------

    def pattern_analysis(self, message: str) -> DetectionResult:
        """Classify *message* with the fixed pattern rules, first match wins."""
        text = message.strip()

        if self.trigger_prefix and message.lower().startswith(self.trigger_prefix.lower()):
            return DetectionResult(True, 0.9, "Trigger prefix detected")

        if _SPAM_PATTERN.match(text):
            return DetectionResult(False, 0.95, "Message appears to be spam or nonsense")

        if _COMMAND_PATTERN.match(text):
            return DetectionResult(False, 0.85, "Message is a command")

        if self.agent_name and re.search(
            rf"\b{re.escape(self.agent_name)}\b", text, re.IGNORECASE
        ):
            return DetectionResult(True, 0.95, "Direct mention of agent name")

        if _HELP_PATTERN.search(text):
            return DetectionResult(True, 0.8, "Help request pattern detected")

        if _QUESTION_PATTERN.search(text):
            return DetectionResult(True, 0.7, "Question pattern detected")

        if _GREETING_PATTERN.search(text):
            return DetectionResult(True, 0.65, "Greeting pattern detected")

        return DetectionResult(False, 0.4, "Ambiguous message, needs contextual analysis")

    # ------------------------------------------------------------------
    # AI-contextual stage
    # ------------------------------------------------------------------

    def build_detection_prompt(self, sender_id: str, sender_name: str, message: str) -> str:
        lines = [
            "Analyze this message from a Minecraft player and determine if the AI "
            f"assistant named '{self.agent_name}' should respond.",
            "",
        ]
        recent = self.context.recent(sender_id, self.settings.context_window)
        if recent:
            lines.append("Recent conversation context:")
            lines.extend(f"- {entry.role}: {entry.content}" for entry in recent)
            lines.append("")
        lines += [
            f"Current message from player '{sender_name}': {message}",
            "",
            "Respond with YES or NO and a confidence score (0.0-1.0).",
            "Format: YES/NO|confidence|reason",
            "",
            "Respond YES if:",
            "- The player is addressing the AI assistant directly",
            "- The message is a question the AI can answer",
            "- The player is asking for help with the game",
            "- It's a greeting or conversation directed at the AI",
            "- The message relates to previous AI interactions",
            "",
            "Respond NO if:",
            "- It's conversation between players (not involving AI)",
            "- It's a technical command or server message",
            "- It's spam, nonsense, or inappropriate content",
            "- The message doesn't need AI assistance",
        ]
        return "\n".join(lines)

    @staticmethod
    def parse_detection_reply(content: str) -> DetectionResult:
        """Parse a ``YES|0.9|reason`` reply.

        Raises:
            DetectionError: If no line has a YES/NO verdict and a finite
                confidence.
        """
        for line in content.strip().splitlines():
            if "|" not in line:
                continue
            parts = [part.strip() for part in line.split("|")]
            verdict = re.sub(r"[^A-Z]", "", parts[0].upper())
            if verdict not in ("YES", "NO"):
                continue
            try:
                confidence = float(parts[1])
            except (IndexError, ValueError) as exc:
                raise DetectionError(f"Invalid confidence in detection reply: {line!r}") from exc
            if not math.isfinite(confidence):
                raise DetectionError(f"Non-finite confidence in detection reply: {line!r}")
            reason = "|".join(parts[2:]).strip() or "AI analysis"
            return DetectionResult(
                should_respond=verdict == "YES",
                confidence=confidence,
                reason=reason,
                method=DetectionMethod.AI_CONTEXTUAL,
            )
        raise DetectionError(f"Unparsable detection reply: {content!r}")

    async def _ai_analysis(self, sender_id: str, sender_name: str, message: str) -> DetectionResult:
        if self.detection_provider is None:
            raise DetectionError("No detection provider configured")
        prompt = self.build_detection_prompt(sender_id, sender_name, message)
        timeout = self.settings.detection_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self.detection_provider.chat([ChatMessage.user(prompt)], DETECTION_SYSTEM_PROMPT),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DetectionError(f"AI detection timed out after {timeout:.1f}s") from exc
        if not response.successful:
            raise DetectionError(f"Detection provider failed: {response.error_message}")
        result = self.parse_detection_reply(response.content)
        logger.debug(
            "AI detection result: %s (confidence=%.2f, reason=%s)",
            result.should_respond,
            result.confidence,
            result.reason,
        )
        return result

    def _remember(self, message: str, result: DetectionResult) -> None:
        if self.settings.cache_decisions:
            self.cache.put(message, result)
