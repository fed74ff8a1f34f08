"""
craftchat conversation package.

Multi-provider conversational engine: provider abstraction (Ollama, Claude,
OpenAI), tool-schema converters, the bounded tool-calling orchestrator and
the response detection engine.
"""

from craftchat.conversation.errors import (
    ConfigurationError,
    DetectionError,
    ErrorKind,
    LLMAPIError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    ProtocolError,
    ToolExecutionError,
)
from craftchat.conversation.history import ChatMessage, MessageHistory
from craftchat.conversation.providers import (
    AIProvider,
    AIResponse,
    ClaudeProvider,
    OllamaProvider,
    OpenAIProvider,
    ToolCall,
    ToolDefinition,
)
from craftchat.conversation.converters import ToolConverter, ToolConverterFactory
from craftchat.conversation.tools import McpToolBackend, ToolBackend, ToolRegistry, ToolResult
from craftchat.conversation.providers.factory import ProviderFactory
from craftchat.conversation.detection import (
    DetectionMethod,
    DetectionResult,
    ResponseDetectionEngine,
)
from craftchat.conversation.orchestrator import ConversationOrchestrator

__all__ = [
    "AIProvider",
    "AIResponse",
    "ChatMessage",
    "ClaudeProvider",
    "ConfigurationError",
    "ConversationOrchestrator",
    "DetectionError",
    "DetectionMethod",
    "DetectionResult",
    "ErrorKind",
    "LLMAPIError",
    "LLMConnectionError",
    "LLMError",
    "LLMRateLimitError",
    "McpToolBackend",
    "MessageHistory",
    "OllamaProvider",
    "OpenAIProvider",
    "ProtocolError",
    "ProviderFactory",
    "ResponseDetectionEngine",
    "ToolBackend",
    "ToolCall",
    "ToolConverter",
    "ToolConverterFactory",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolResult",
]
