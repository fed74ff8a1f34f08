"""
FastAPI chat-frontend adapter for the ConversationOrchestrator.

Exposes the orchestrator to a game-server plugin (or any other chat frontend)
over HTTP.  The frontend posts every chat line; the response says whether the
assistant answered and, if so, the formatted reply to broadcast.

Endpoints
---------
GET  /health
    Liveness check with the active provider and session count.

GET  /stats
    Orchestrator, provider and detection statistics.

POST /chat
    Run detection and, if accepted, one conversation turn.

DELETE /history/{participant}
    Clear one participant's history.

DELETE /history
    Clear every history.

Usage::

    from craftchat.conversation.server import create_chat_app
    app = create_chat_app(orchestrator)
    uvicorn.run(app, host="127.0.0.1", port=8765)
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from craftchat.conversation.orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """Request body for POST /chat."""

    sender_id: str = Field(..., description="Stable identity of the chat participant.")
    sender_name: str = Field(..., description="Display name of the participant.")
    message: str = Field(..., description="Raw chat line.")


class ChatResponse(BaseModel):
    """Response body for POST /chat."""

    responded: bool
    response: str | None = Field(
        default=None, description="Formatted reply to broadcast, or null for no action."
    )
    detection: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    provider: str
    model: str
    active_participants: int


def format_response(template: str, message: str) -> str:
    """Substitute the ``%message%`` placeholder in *template*."""
    return template.replace("%message%", message)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_chat_app(orchestrator: ConversationOrchestrator) -> FastAPI:
    """Create a FastAPI application wrapping *orchestrator*.

    Args:
        orchestrator: A fully initialised ``ConversationOrchestrator``.

    Returns:
        A configured ``FastAPI`` application ready to be served or used in
        tests via ``httpx.AsyncClient(transport=ASGITransport(app=app))``.
    """
    app = FastAPI(
        title="craftchat API",
        description="Chat frontend interface for the craftchat conversation engine.",
        version="0.1.0",
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        stats = orchestrator.statistics()
        return HealthResponse(
            status="ok",
            provider=orchestrator.provider.provider_name,
            model=orchestrator.provider.model,
            active_participants=stats["active_participants"],
        )

    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        return orchestrator.statistics()

    @app.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest) -> ChatResponse:
        """Process one chat line.

        Raises:
            HTTPException 500: If an unexpected server error occurs.
        """
        logger.info("POST /chat: sender=%r message=%r", body.sender_name, body.message)
        try:
            reply, detection = await orchestrator.handle_chat_message(
                body.sender_id, body.sender_name, body.message
            )
        except Exception as exc:
            logger.error("Unexpected error handling chat message: %s", exc, exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error") from exc

        if reply is None:
            return ChatResponse(responded=False, detection=detection.to_dict())
        formatted = format_response(orchestrator.settings.resolved_response_format, reply)
        return ChatResponse(responded=True, response=formatted, detection=detection.to_dict())

    @app.delete("/history/{participant}", status_code=204)
    async def clear_participant(participant: str) -> None:
        logger.info("DELETE /history/%s", participant)
        orchestrator.clear_history(participant)

    @app.delete("/history", status_code=204)
    async def clear_all() -> None:
        """Clear all in-memory histories."""
        logger.info("DELETE /history (all participants)")
        orchestrator.clear_history()

    return app
