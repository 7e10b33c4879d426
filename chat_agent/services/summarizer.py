"""Topic-based conversation summaries, produced in the background.

``TopicSummarizer.check_and_summarize`` counts the user messages since the
last summary batch and, once ``turn_threshold`` is reached, asks a cheap
model to split that stretch of conversation into topics and summarize each
one.  ``SummarizationQueue`` runs it off the request path with at most one
job per conversation.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from chat_agent.config import ANALYSIS_MODEL_NAME, ANTHROPIC_API_KEY, SUMMARY_TURN_THRESHOLD
from chat_agent.contracts import (
    OperationType,
    Role,
    SummaryBatch,
    TokenUsage,
    TopicSummary,
    UsageRecord,
)
from chat_agent.prompts import TOPIC_SUMMARY_PROMPT, format_transcript
from chat_agent.services.cost import CostCalculator, default_calculator
from chat_agent.services.metrics import metrics
from chat_agent.services.store import ConversationStore

logger = logging.getLogger(__name__)


class Summarizer(Protocol):
    async def check_and_summarize(self, conversation_id: str) -> SummaryBatch | None: ...


class _TopicPayload(BaseModel):
    topic_name: str
    summary_text: str
    related_topics: list[str] = Field(default_factory=list)


class TopicSummariesPayload(BaseModel):
    """Structured output requested from the model."""

    topics: list[_TopicPayload] = Field(default_factory=list)


class TopicSummarizer:
    def __init__(
        self,
        store: ConversationStore,
        *,
        llm: ChatAnthropic | None = None,
        model: str = ANALYSIS_MODEL_NAME,
        turn_threshold: int = SUMMARY_TURN_THRESHOLD,
        max_topics: int = 5,
        cost_calculator: CostCalculator = default_calculator,
    ) -> None:
        self._store = store
        self._model = model
        self.turn_threshold = turn_threshold
        self._max_topics = max_topics
        self._cost = cost_calculator
        llm = llm or ChatAnthropic(
            model=model,
            api_key=ANTHROPIC_API_KEY,
            temperature=0.2,
            max_tokens=1500,
        )
        self._structured = llm.with_structured_output(TopicSummariesPayload, include_raw=True)

    async def check_and_summarize(self, conversation_id: str) -> SummaryBatch | None:
        """Summarize the messages since the last batch once enough user turns piled up."""
        latest = await self._store.get_latest_summary_batch(conversation_id)
        after = latest.end_message_id if latest else None

        user_turns = await self._store.get_messages_since(conversation_id, after, role=Role.USER)
        logger.debug(
            "Summary check for %s: %d user turns since last batch (threshold %d)",
            conversation_id, len(user_turns), self.turn_threshold,
        )
        if len(user_turns) < self.turn_threshold:
            return None

        messages = await self._store.get_messages_since(conversation_id, after)
        prompt = [
            SystemMessage(content=TOPIC_SUMMARY_PROMPT.format(max_topics=self._max_topics)),
            HumanMessage(content=format_transcript(messages)),
        ]

        t0 = time.perf_counter()
        try:
            output = await self._structured.ainvoke(prompt)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "summarize",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000

        raw_usage = getattr(output.get("raw"), "usage_metadata", None) or {}
        usage = TokenUsage(raw_usage.get("input_tokens", 0), raw_usage.get("output_tokens", 0))
        parsed: TopicSummariesPayload | None = output.get("parsed")
        await self._record_usage(conversation_id, usage, elapsed, parsed is not None)
        if parsed is None:
            metrics.record_failure("anthropic", "summarize", error_type="ParseError", latency_ms=elapsed)
            raise ValueError(f"Topic summary returned unparseable output: {output.get('parsing_error')}")
        metrics.record_success("anthropic", "summarize", latency_ms=elapsed)

        batch = SummaryBatch(
            batch_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            summaries=tuple(
                TopicSummary(
                    topic_name=t.topic_name,
                    summary_text=t.summary_text,
                    related_topics=tuple(t.related_topics),
                )
                for t in parsed.topics[: self._max_topics]
            ),
            start_message_id=messages[0].id,
            end_message_id=messages[-1].id,
            message_count=len(messages),
        )
        await self._store.save_summary_batch(batch)
        logger.info(
            "Summarized %d messages of %s into %d topics",
            batch.message_count, conversation_id, len(batch.summaries),
        )
        return batch

    async def _record_usage(
        self,
        conversation_id: str,
        usage: TokenUsage,
        duration_ms: float,
        success: bool,
    ) -> None:
        cost = self._cost.cost(self._model, usage)
        try:
            await self._store.create_usage_record(UsageRecord(
                operation=OperationType.SUMMARIZATION,
                model=self._model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=float(cost.total_cost),
                conversation_id=conversation_id,
                success=success,
                duration_ms=duration_ms,
            ))
        except Exception:
            logger.exception("Failed to record summarization usage for %s", conversation_id)


# ── Background queue ─────────────────────────────────────────────────


class SummarizationQueue:
    """Runs summarization jobs as background tasks, one per conversation.

    A job scheduled while another is still running for the same
    conversation is dropped; the next turn will pick up its messages.
    Job failures are logged and never reach the turn that scheduled them.
    """

    def __init__(self) -> None:
        self._active: dict[str, asyncio.Task] = {}

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def schedule(
        self,
        conversation_id: str,
        job: Callable[[], Awaitable[Any]],
    ) -> bool:
        """Start ``job`` in the background.  Returns False if one is already running."""
        if conversation_id in self._active:
            logger.debug("Summarization already active for %s", conversation_id)
            return False

        task = asyncio.create_task(self._run(conversation_id, job), name=f"summarize-{conversation_id}")
        self._active[conversation_id] = task

        def _done(finished: asyncio.Task) -> None:
            if self._active.get(conversation_id) is finished:
                del self._active[conversation_id]

        task.add_done_callback(_done)
        return True

    async def wait_for(self, conversation_id: str) -> None:
        task = self._active.get(conversation_id)
        if task is not None:
            await task

    async def drain(self) -> None:
        """Wait for every running job (used on shutdown)."""
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {"active_summarizations": sorted(self._active)}

    @staticmethod
    async def _run(conversation_id: str, job: Callable[[], Awaitable[Any]]) -> None:
        t0 = time.perf_counter()
        try:
            result = await job()
        except Exception:
            logger.exception("Background summarization failed for %s", conversation_id)
            return
        logger.info(
            "Background summarization for %s finished in %.0fms (%s)",
            conversation_id,
            (time.perf_counter() - t0) * 1000,
            f"{len(result.summaries)} topics" if result else "below threshold",
        )
