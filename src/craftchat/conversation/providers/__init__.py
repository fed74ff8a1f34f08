"""
LLM providers for craftchat.

``ProviderFactory`` lives in ``craftchat.conversation.providers.factory`` and
is imported from there (it depends on the converters, which depend on this
package's ``base`` module).
"""

from craftchat.conversation.providers.base import (
    APOLOGY_MESSAGE,
    AIProvider,
    AIResponse,
    BaseProvider,
    ToolCall,
    ToolDefinition,
)
from craftchat.conversation.providers.claude_provider import ClaudeProvider
from craftchat.conversation.providers.ollama_provider import OllamaProvider
from craftchat.conversation.providers.openai_provider import OpenAIProvider

__all__ = [
    "AIProvider",
    "AIResponse",
    "APOLOGY_MESSAGE",
    "BaseProvider",
    "ClaudeProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "ToolCall",
    "ToolDefinition",
]
