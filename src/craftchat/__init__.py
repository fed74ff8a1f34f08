"""
craftchat - a multi-provider chat assistant engine for game servers.

The assistant talks through Ollama, Claude or OpenAI, calls external tools
through an MCP server, and decides on its own whether a chat line is meant
for it.

Quick Start:
    >>> from craftchat import ConversationOrchestrator, get_settings
    >>> orchestrator = ConversationOrchestrator(get_settings())
    >>> reply, detection = await orchestrator.handle_chat_message(
    ...     "uuid-1", "Alex", "Steve, how do I craft a sword?"
    ... )
"""

from craftchat.config import Settings, get_settings, load_settings
from craftchat.conversation import ConversationOrchestrator, ResponseDetectionEngine

__version__ = "0.1.0"
__all__ = [
    "ConversationOrchestrator",
    "ResponseDetectionEngine",
    "Settings",
    "get_settings",
    "load_settings",
]
