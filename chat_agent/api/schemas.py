"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Incoming chat message from a client."""

    message: str = Field(..., min_length=1, max_length=10_000, description="The user's message")
    conversation_id: str | None = Field(
        None,
        min_length=1,
        max_length=100,
        description="Existing conversation to continue; omit to start a new one",
    )
    user_id: str = Field("anonymous", min_length=1, max_length=100)
    enable_tools: bool = Field(True, description="Allow the agent to call tools this turn")


class ToolUsed(BaseModel):
    name: str
    call_id: str
    success: bool
    error: str | None = None
    duration_ms: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The agent's response message")
    conversation_id: str = Field(..., description="The conversation this turn belongs to")
    tools_used: list[ToolUsed] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime


class HistoryResponse(BaseModel):
    conversation_id: str
    messages: list[MessageOut]


class ToolsStatusResponse(BaseModel):
    total_tools: int
    tool_names: list[str]
    circuits: dict[str, str]
    metrics: dict[str, dict[str, Any]]
    active_summarizations: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "chat-agent"
