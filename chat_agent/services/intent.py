"""Intent analysis of the current user message.

A cheap model reads the recent conversation plus the previous analysis and
returns a structured ``IntentAnalysisResult``.  The orchestrator appends it
to the system prompt as guidance; it never blocks a turn.  Every analysis
is stored, and its token usage is recorded as an ``intent_analysis``
usage record.
"""

from __future__ import annotations

import logging
import time
from typing import Literal, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from chat_agent.config import ANALYSIS_MODEL_NAME, ANTHROPIC_API_KEY
from chat_agent.contracts import IntentAnalysisResult, OperationType, TokenUsage, UsageRecord
from chat_agent.prompts import INTENT_ANALYSIS_INPUT, INTENT_ANALYSIS_PROMPT, format_transcript
from chat_agent.services.cost import CostCalculator, default_calculator
from chat_agent.services.metrics import metrics
from chat_agent.services.store import ConversationStore

logger = logging.getLogger(__name__)


class IntentAnalyzer(Protocol):
    async def analyze(
        self, conversation_id: str, message_id: str, text: str
    ) -> IntentAnalysisResult: ...

    async def latest(self, conversation_id: str) -> IntentAnalysisResult | None: ...


class IntentPayload(BaseModel):
    """Structured output requested from the model."""

    current_intent: str = Field(..., description="What the user wants to achieve")
    contextual_relevance: Literal["high", "medium", "low"] = "medium"
    relationship_to_history: Literal["continuation", "new_topic", "clarification"] = "new_topic"
    key_topics: list[str] = Field(default_factory=list)
    pending_questions: list[str] = Field(default_factory=list)


class LLMIntentAnalyzer:
    def __init__(
        self,
        store: ConversationStore,
        *,
        llm: ChatAnthropic | None = None,
        model: str = ANALYSIS_MODEL_NAME,
        context_messages: int = 10,
        cost_calculator: CostCalculator = default_calculator,
    ) -> None:
        self._store = store
        self._model = model
        self._context_messages = context_messages
        self._cost = cost_calculator
        llm = llm or ChatAnthropic(
            model=model,
            api_key=ANTHROPIC_API_KEY,
            temperature=0.1,
            max_tokens=1000,
        )
        self._structured = llm.with_structured_output(IntentPayload, include_raw=True)

    async def latest(self, conversation_id: str) -> IntentAnalysisResult | None:
        return await self._store.get_latest_intent_analysis(conversation_id)

    async def analyze(
        self, conversation_id: str, message_id: str, text: str
    ) -> IntentAnalysisResult:
        """Analyze ``text`` in the context of the conversation.

        Raises on provider errors or unparseable output; the caller decides
        how to degrade.
        """
        context = await self._store.get_context(conversation_id, limit=self._context_messages + 1)
        history = [m for m in (context.messages if context else ()) if m.id != message_id]
        previous = await self._store.get_latest_intent_analysis(conversation_id)

        messages = [
            SystemMessage(content=INTENT_ANALYSIS_PROMPT),
            HumanMessage(content=INTENT_ANALYSIS_INPUT.format(
                context=format_transcript(history[-self._context_messages:]) or "(no earlier messages)",
                previous=previous.current_intent if previous else "(none)",
                prompt=text,
            )),
        ]

        t0 = time.perf_counter()
        try:
            output = await self._structured.ainvoke(messages)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "intent_analysis",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            await self._record_usage(conversation_id, message_id, TokenUsage(), elapsed, False)
            raise
        elapsed = (time.perf_counter() - t0) * 1000

        raw_usage = getattr(output.get("raw"), "usage_metadata", None) or {}
        usage = TokenUsage(raw_usage.get("input_tokens", 0), raw_usage.get("output_tokens", 0))
        parsed: IntentPayload | None = output.get("parsed")
        await self._record_usage(conversation_id, message_id, usage, elapsed, parsed is not None)

        if parsed is None:
            metrics.record_failure("anthropic", "intent_analysis", error_type="ParseError", latency_ms=elapsed)
            raise ValueError(f"Intent analysis returned unparseable output: {output.get('parsing_error')}")
        metrics.record_success("anthropic", "intent_analysis", latency_ms=elapsed)

        result = IntentAnalysisResult(
            current_intent=parsed.current_intent,
            key_topics=tuple(parsed.key_topics),
            contextual_relevance=parsed.contextual_relevance,
            relationship_to_history=parsed.relationship_to_history,
            pending_questions=tuple(parsed.pending_questions),
            message_id=message_id,
        )
        await self._store.save_intent_analysis(conversation_id, result)
        logger.debug("Intent for %s: %s", conversation_id, result.current_intent)
        return result

    async def _record_usage(
        self,
        conversation_id: str,
        message_id: str,
        usage: TokenUsage,
        duration_ms: float,
        success: bool,
    ) -> None:
        cost = self._cost.cost(self._model, usage)
        try:
            await self._store.create_usage_record(UsageRecord(
                operation=OperationType.INTENT_ANALYSIS,
                model=self._model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=float(cost.total_cost),
                conversation_id=conversation_id,
                message_id=message_id,
                success=success,
                duration_ms=duration_ms,
            ))
        except Exception:
            logger.exception("Failed to record intent-analysis usage for %s", conversation_id)
