"""
craftchat - main entry point.

Loads configuration, configures logging, builds the conversation
orchestrator, and then either serves the REST chat API or runs an
interactive console session for local testing.

Architecture:
    - config.py: Configuration management
    - conversation/orchestrator.py: Turn loop, histories, detection wiring
    - conversation/server.py: REST adapter for chat frontends
    - main.py: Orchestration and entry point
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from craftchat.config import Settings, load_settings
from craftchat.conversation.errors import ConfigurationError
from craftchat.conversation.orchestrator import ConversationOrchestrator
from craftchat.conversation.server import create_chat_app, format_response
from craftchat.conversation.tools.mcp import McpToolBackend

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_orchestrator(settings: Settings) -> ConversationOrchestrator:
    """Validate *settings* and wire up the orchestrator and tool backend.

    Raises:
        ConfigurationError: If the settings cannot start the primary provider.
    """
    settings.validate_for_startup()
    backend = McpToolBackend(settings.tools) if settings.tools.enabled else None
    return ConversationOrchestrator(settings, tool_backend=backend)


async def run_rest_server(orchestrator: ConversationOrchestrator) -> None:
    """Serve the REST chat API until interrupted."""
    import uvicorn

    settings = orchestrator.settings
    config = uvicorn.Config(
        create_chat_app(orchestrator),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
    )
    logger.info("Starting REST API server on %s:%d", settings.server.host, settings.server.port)
    await uvicorn.Server(config).serve()


async def run_console(orchestrator: ConversationOrchestrator, sender_name: str) -> None:
    """Read chat lines from stdin and print the assistant's replies."""
    response_format = orchestrator.settings.resolved_response_format
    print(f"Chatting as {sender_name}. Type /quit to exit, /clear to reset history.")
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            break
        text = line.strip()
        if text == "/quit":
            break
        if text == "/clear":
            orchestrator.clear_history(sender_name)
            print("History cleared.")
            continue
        reply, detection = await orchestrator.handle_chat_message(sender_name, sender_name, text)
        if reply is None:
            print(f"(no response: {detection.reason}, confidence={detection.confidence:.2f})")
        else:
            print(format_response(response_format, reply))


async def main(settings: Settings, mode: str, sender_name: str) -> None:
    """Run craftchat in *mode* (``serve`` or ``console``)."""
    orchestrator = build_orchestrator(settings)

    if not await orchestrator.provider.test_connection():
        logger.warning(
            "Primary provider (%s) connection test failed", orchestrator.provider.provider_name
        )
    if settings.startup_test.enabled:
        await orchestrator.run_startup_test()

    try:
        if mode == "console":
            await run_console(orchestrator, sender_name)
        else:
            await run_rest_server(orchestrator)
    finally:
        await orchestrator.shutdown()


def cli_main() -> None:
    """Entry point for the craftchat console script."""
    parser = argparse.ArgumentParser(description="Multi-provider chat assistant engine")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument(
        "--mode",
        choices=["serve", "console"],
        default="serve",
        help="Serve the REST API or chat on the console (default: serve)",
    )
    parser.add_argument("--provider", help="Override the primary provider")
    parser.add_argument("--name", default="Player", help="Sender name in console mode")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        configure_logging("INFO")
        logger.error("Configuration error: %s", exc)
        sys.exit(1)

    if args.provider:
        settings.ai.provider = args.provider
    configure_logging("DEBUG" if args.debug else settings.log_level)

    try:
        asyncio.run(main(settings, args.mode, args.name))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        logger.error("Please check your configuration file or CRAFTCHAT_* environment variables")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    cli_main()
