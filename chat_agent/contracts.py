"""Shared value objects passed between the orchestrator, the tool layer,
the completion provider and the conversation store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class OperationType(str, Enum):
    """What kind of work a usage record accounts for."""

    CHAT_COMPLETION = "chat_completion"
    TOOL_CALL = "tool_call"
    SUMMARIZATION = "summarization"
    INTENT_ANALYSIS = "intent_analysis"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class SearchUsage:
    search_calls: int
    model: str | None = None


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``call_id`` is assigned by the provider and must travel with the
    result so the follow-up completion can correlate them.
    """

    name: str
    arguments: dict[str, Any]
    call_id: str


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_message_content(self) -> dict[str, Any]:
        """The payload serialised back to the model as a tool-role message."""
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


@dataclass(frozen=True)
class ToolContext:
    """Per-call context handed to a tool by the orchestrator."""

    conversation_id: str | None = None
    message_id: str | None = None
    user_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class ToolCallOutcome:
    """A tool result tagged with the call that produced it."""

    call: ToolCallRequest
    result: ToolResult


@dataclass(frozen=True)
class Completion:
    """Normalised response of one completion call."""

    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage = TokenUsage()
    model: str | None = None


@dataclass(frozen=True)
class StoredMessage:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class Conversation:
    id: str
    user_id: str
    title: str = "New Conversation"
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class ConversationContext:
    conversation_id: str
    user_id: str
    messages: tuple[StoredMessage, ...] = ()


@dataclass(frozen=True)
class ToolUsageRow:
    message_id: str
    call_id: str
    tool_name: str
    input: dict[str, Any]
    output: Any
    status: str
    error: str | None
    duration_ms: float


@dataclass(frozen=True)
class UsageRecord:
    """Append-only accounting of one operation's token/call consumption."""

    operation: OperationType
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    conversation_id: str | None = None
    message_id: str | None = None
    search_calls: int = 0
    success: bool = True
    duration_ms: float = 0.0
    operation_subtype: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class TurnRequest:
    message: str
    conversation_id: str | None = None
    user_id: str = "anonymous"
    enable_tools: bool = True
    model: str | None = None


@dataclass(frozen=True)
class TurnResult:
    reply: str
    conversation_id: str
    tool_results: tuple[ToolCallOutcome, ...]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class IntentAnalysisResult:
    """Structured reading of what the user is after in the current turn."""

    current_intent: str
    key_topics: tuple[str, ...] = ()
    contextual_relevance: str = "medium"        # high | medium | low
    relationship_to_history: str = "new_topic"  # continuation | new_topic | clarification
    pending_questions: tuple[str, ...] = ()
    message_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class TopicSummary:
    topic_name: str
    summary_text: str
    related_topics: tuple[str, ...] = ()


@dataclass(frozen=True)
class SummaryBatch:
    """Topic summaries covering one contiguous range of messages."""

    batch_id: str
    conversation_id: str
    summaries: tuple[TopicSummary, ...]
    start_message_id: str
    end_message_id: str
    message_count: int
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
