"""Conversation persistence.

``ConversationStore`` is the contract the orchestrator, the intent analyzer
and the summarizer write through.  ``InMemoryConversationStore`` is the
process-local implementation used by the server, the CLI and the tests.
A relational backend would implement the same protocol.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from chat_agent.contracts import (
    Conversation,
    ConversationContext,
    IntentAnalysisResult,
    Role,
    StoredMessage,
    SummaryBatch,
    ToolUsageRow,
    UsageRecord,
)
from chat_agent.errors import PersistenceError

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def create_conversation(
        self,
        user_id: str,
        conversation_id: str | None = None,
        title: str = "New Conversation",
    ) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def get_context(
        self, conversation_id: str, limit: int | None = None
    ) -> ConversationContext | None: ...

    async def create_message(
        self, conversation_id: str, role: Role, content: str
    ) -> StoredMessage: ...

    async def update_aggregate_totals(
        self,
        conversation_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> Conversation: ...

    async def create_tool_usage_rows(self, rows: list[ToolUsageRow]) -> None: ...

    async def create_usage_record(self, record: UsageRecord) -> None: ...

    async def save_intent_analysis(
        self, conversation_id: str, analysis: IntentAnalysisResult
    ) -> None: ...

    async def get_latest_intent_analysis(
        self, conversation_id: str
    ) -> IntentAnalysisResult | None: ...

    async def save_summary_batch(self, batch: SummaryBatch) -> None: ...

    async def get_latest_summary_batch(self, conversation_id: str) -> SummaryBatch | None: ...

    async def get_messages_since(
        self,
        conversation_id: str,
        after_message_id: str | None = None,
        role: Role | None = None,
    ) -> list[StoredMessage]: ...

    async def delete_conversation(self, conversation_id: str) -> bool: ...


class InMemoryConversationStore:
    """Dict-backed ``ConversationStore``.

    The aggregate update is a read-then-add; a per-conversation
    ``asyncio.Lock`` keeps concurrent turns on one conversation from losing
    each other's increments.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[StoredMessage]] = defaultdict(list)
        self._tool_usage: list[ToolUsageRow] = []
        self._usage: list[UsageRecord] = []
        self._intents: dict[str, list[IntentAnalysisResult]] = defaultdict(list)
        self._summaries: dict[str, list[SummaryBatch]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Conversations ─────────────────────────────────────────────────

    async def create_conversation(
        self,
        user_id: str,
        conversation_id: str | None = None,
        title: str = "New Conversation",
    ) -> Conversation:
        conversation_id = conversation_id or str(uuid.uuid4())
        if conversation_id in self._conversations:
            raise PersistenceError(f"Conversation {conversation_id} already exists")
        conversation = Conversation(id=conversation_id, user_id=user_id, title=title)
        self._conversations[conversation_id] = conversation
        logger.debug("Created conversation %s for user %s", conversation_id, user_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def get_context(
        self, conversation_id: str, limit: int | None = None
    ) -> ConversationContext | None:
        """Most recent ``limit`` messages, oldest first."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        messages = self._messages[conversation_id]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return ConversationContext(
            conversation_id=conversation_id,
            user_id=conversation.user_id,
            messages=tuple(messages),
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            return False
        message_ids = {m.id for m in self._messages.pop(conversation_id, [])}
        self._tool_usage = [r for r in self._tool_usage if r.message_id not in message_ids]
        self._intents.pop(conversation_id, None)
        self._summaries.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    # ── Messages ──────────────────────────────────────────────────────

    async def create_message(
        self, conversation_id: str, role: Role, content: str
    ) -> StoredMessage:
        if conversation_id not in self._conversations:
            raise PersistenceError(f"Conversation {conversation_id} does not exist")
        message = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
        )
        self._messages[conversation_id].append(message)
        return message

    async def get_messages_since(
        self,
        conversation_id: str,
        after_message_id: str | None = None,
        role: Role | None = None,
    ) -> list[StoredMessage]:
        messages = self._messages.get(conversation_id, [])
        if after_message_id is not None:
            ids = [m.id for m in messages]
            if after_message_id not in ids:
                return []
            messages = messages[ids.index(after_message_id) + 1:]
        if role is not None:
            messages = [m for m in messages if m.role == role]
        return list(messages)

    # ── Accounting ────────────────────────────────────────────────────

    async def update_aggregate_totals(
        self,
        conversation_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> Conversation:
        async with self._locks[conversation_id]:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise PersistenceError(f"Conversation {conversation_id} does not exist")
            updated = replace(
                current,
                total_input_tokens=current.total_input_tokens + input_tokens,
                total_output_tokens=current.total_output_tokens + output_tokens,
                total_cost=round(current.total_cost + cost, 6),
                updated_at=datetime.now(UTC),
            )
            self._conversations[conversation_id] = updated
            return updated

    async def create_tool_usage_rows(self, rows: list[ToolUsageRow]) -> None:
        self._tool_usage.extend(rows)

    async def create_usage_record(self, record: UsageRecord) -> None:
        self._usage.append(record)

    def usage_records(self, conversation_id: str | None = None) -> list[UsageRecord]:
        if conversation_id is None:
            return list(self._usage)
        return [r for r in self._usage if r.conversation_id == conversation_id]

    def tool_usage_rows(self, message_id: str | None = None) -> list[ToolUsageRow]:
        if message_id is None:
            return list(self._tool_usage)
        return [r for r in self._tool_usage if r.message_id == message_id]

    # ── Side analyses ─────────────────────────────────────────────────

    async def save_intent_analysis(
        self, conversation_id: str, analysis: IntentAnalysisResult
    ) -> None:
        self._intents[conversation_id].append(analysis)

    async def get_latest_intent_analysis(
        self, conversation_id: str
    ) -> IntentAnalysisResult | None:
        history = self._intents.get(conversation_id)
        return history[-1] if history else None

    async def save_summary_batch(self, batch: SummaryBatch) -> None:
        self._summaries[batch.conversation_id].append(batch)

    async def get_latest_summary_batch(self, conversation_id: str) -> SummaryBatch | None:
        batches = self._summaries.get(conversation_id)
        return batches[-1] if batches else None
