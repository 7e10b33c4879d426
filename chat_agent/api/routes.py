"""FastAPI route definitions for the chat agent API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, HTTPException, Request

from chat_agent.agent import AgentOrchestrator
from chat_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    HistoryResponse,
    MessageOut,
    ToolsStatusResponse,
    ToolUsed,
)
from chat_agent.contracts import TurnRequest
from chat_agent.errors import CompletionProviderError

logger = logging.getLogger(__name__)

router = APIRouter()

T = TypeVar("T")

# How often an in-flight turn checks whether the client is still there
DISCONNECT_POLL_SECONDS = 0.5


def _get_agent(request: Request) -> AgentOrchestrator:
    """Retrieve the orchestrator from app state (set up in the lifespan)."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return agent


async def _cancel_on_disconnect(http_request: Request, work: Awaitable[T]) -> T:
    """Await ``work``, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await http_request.is_disconnected():
                request_id = getattr(http_request.state, "request_id", "?")
                logger.info("[%s] Client disconnected; cancelling turn", request_id)
                task.cancel()
                raise HTTPException(status_code=499, detail="Client closed request.")
    finally:
        if not task.done():
            task.cancel()


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the agent and get its reply.

    Omit ``conversation_id`` to start a new conversation; the response
    carries the id to send with the next turn.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    turn = TurnRequest(
        message=request.message,
        conversation_id=request.conversation_id,
        user_id=request.user_id,
        enable_tools=request.enable_tools,
    )
    try:
        result = await _cancel_on_disconnect(http_request, agent.process_turn(turn))
    except HTTPException:
        raise
    except CompletionProviderError as e:
        logger.exception("[%s] Completion provider failed", request_id)
        raise HTTPException(
            status_code=502,
            detail="The language model is unavailable right now. Please try again.",
        ) from e
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        reply=result.reply,
        conversation_id=result.conversation_id,
        tools_used=[
            ToolUsed(
                name=o.call.name,
                call_id=o.call.call_id,
                success=o.result.success,
                error=o.result.error,
                duration_ms=o.result.duration_ms,
                metadata=o.result.metadata,
            )
            for o in result.tool_results
        ],
        metadata=result.metadata,
    )


@router.get("/tools", response_model=ToolsStatusResponse)
async def tools_status(http_request: Request):
    """Registered tools with their circuit state and usage metrics."""
    return ToolsStatusResponse(**_get_agent(http_request).get_status())


@router.get("/conversations/{conversation_id}/messages", response_model=HistoryResponse)
async def conversation_history(conversation_id: str, http_request: Request, limit: int | None = None):
    agent = _get_agent(http_request)
    messages = await agent.get_conversation_history(conversation_id, limit)
    return HistoryResponse(
        conversation_id=conversation_id,
        messages=[
            MessageOut(id=m.id, role=m.role.value, content=m.content, created_at=m.created_at)
            for m in messages
        ],
    )


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, http_request: Request):
    if not await _get_agent(http_request).delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found.")
