"""LangGraph-based turn orchestration for the chat agent.

Architecture:
  One conversational turn is a compiled LangGraph ``StateGraph``.  Each
  node is one step of the turn and returns a partial state update:

    1. **resolve_conversation** — load or create the conversation and its
                                  recent history
    2. **persist_user_message** — store the inbound message (its id is
                                  needed by intent analysis and tool usage)
    3. **analyze_intent**       — best-effort intent analysis (cheap model)
    4. **schedule_summary**     — start topic summarization in the background
    5. **build_prompt**         — system prompt + guidance + bounded history
    6. **complete**             — primary completion with tool schemas
    7. **run_tools**            — concurrent tool execution, results kept in
                                  the order the model requested them
    8. **follow_up**            — second completion with the tool results
    9. **compute_cost**         — both completions plus tool surcharges
   10. **persist_results**      — assistant message, tool usage rows, usage
                                  records and conversation aggregates

  Routing:
    ... → complete → (tool calls?)    → run_tools → follow_up → compute_cost
                   → (no tool calls?) → compute_cost → persist_results → END

  Failure semantics:
    Completion failures (including timeouts) raise
    ``CompletionProviderError`` and fail the turn.  Everything else
    degrades: tool failures become ``success=False`` results the model sees,
    and enrichment or persistence failures are logged and reported in the
    turn's ``warnings``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import operator
import time
import uuid
from collections.abc import Sequence
from typing import Annotated, Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from chat_agent.config import (
    AGENT_ENABLE_TOOLS,
    COMPLETION_TIMEOUT_SECONDS,
    MAX_CONVERSATION_HISTORY,
    MAX_TOOL_CONCURRENCY,
    MODEL_NAME,
)
from chat_agent.contracts import (
    Completion,
    IntentAnalysisResult,
    OperationType,
    Role,
    SearchUsage,
    StoredMessage,
    TokenUsage,
    ToolCallOutcome,
    ToolCallRequest,
    ToolContext,
    ToolResult,
    ToolUsageRow,
    TurnRequest,
    TurnResult,
    UsageRecord,
)
from chat_agent.errors import CompletionProviderError
from chat_agent.prompts import format_intent_guidance, format_summary_guidance, get_system_prompt
from chat_agent.services.completion import AnthropicCompletionProvider, CompletionProvider
from chat_agent.services.cost import CostBreakdown, CostCalculator, default_calculator
from chat_agent.services.intent import IntentAnalyzer, LLMIntentAnalyzer
from chat_agent.services.metrics import metrics
from chat_agent.services.store import ConversationStore, InMemoryConversationStore
from chat_agent.services.summarizer import SummarizationQueue, Summarizer, TopicSummarizer
from chat_agent.tools.executor import INVALID_INPUT_ERROR
from chat_agent.tools.registry import ToolRegistry, create_tool_registry

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """The state that flows through the turn graph.

    ``warnings`` uses an ``operator.add`` reducer so any node can report a
    degraded step without overwriting earlier reports.
    """

    request: TurnRequest
    model: str
    tools_enabled: bool
    started_at: float
    conversation_id: str
    history: list[StoredMessage]
    user_message_id: str | None
    intent: IntentAnalysisResult | None
    summary_scheduled: bool
    prompt: list[BaseMessage]
    tool_schemas: list[dict[str, Any]]
    first: Completion
    outcomes: list[ToolCallOutcome]
    follow_up: Completion | None
    reply: str
    usage: TokenUsage
    cost: CostBreakdown
    warnings: Annotated[list[str], operator.add]


# ── Message helpers ──────────────────────────────────────────────────


def to_langchain_messages(history: Sequence[StoredMessage]) -> list[BaseMessage]:
    """Stored user/assistant messages as LangChain messages, oldest first."""
    converted: list[BaseMessage] = []
    for message in history:
        if message.role == Role.USER:
            converted.append(HumanMessage(content=message.content))
        elif message.role == Role.ASSISTANT:
            converted.append(AIMessage(content=message.content))
    return converted


def tool_call_message(content: str, calls: Sequence[ToolCallRequest]) -> AIMessage:
    """The assistant message that requested ``calls``."""
    return AIMessage(
        content=content,
        tool_calls=[
            {
                "name": call.name,
                "args": call.arguments if isinstance(call.arguments, dict) else {},
                "id": call.call_id,
                "type": "tool_call",
            }
            for call in calls
        ],
    )


def tool_result_messages(outcomes: Sequence[ToolCallOutcome]) -> list[ToolMessage]:
    """One tool-role message per outcome, in the given order."""
    return [
        ToolMessage(
            content=json.dumps(o.result.to_message_content(), default=str),
            tool_call_id=o.call.call_id,
            name=o.call.name,
            status="success" if o.result.success else "error",
        )
        for o in outcomes
    ]


# ── Orchestrator ─────────────────────────────────────────────────────


class AgentOrchestrator:
    """Drives one conversational turn end to end."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        provider: CompletionProvider,
        registry: ToolRegistry,
        intent_analyzer: IntentAnalyzer | None = None,
        summarizer: Summarizer | None = None,
        summarization_queue: SummarizationQueue | None = None,
        cost_calculator: CostCalculator = default_calculator,
        model: str = MODEL_NAME,
        enable_tools: bool = AGENT_ENABLE_TOOLS,
        max_history: int = MAX_CONVERSATION_HISTORY,
        max_tool_concurrency: int = MAX_TOOL_CONCURRENCY,
        completion_timeout: float = COMPLETION_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.provider = provider
        self.registry = registry
        self.intent_analyzer = intent_analyzer
        self.summarizer = summarizer
        self.summarization = summarization_queue or SummarizationQueue()
        self._cost = cost_calculator
        self.model = model
        self.enable_tools = enable_tools
        self.max_history = max_history
        self.max_tool_concurrency = max(1, max_tool_concurrency)
        self.completion_timeout = completion_timeout
        self._graph = self._build_graph()

    # ── Public API ────────────────────────────────────────────────────

    async def process_turn(self, request: TurnRequest) -> TurnResult:
        """Run one turn.  Raises ``CompletionProviderError`` if the model call fails."""
        state: TurnState = await self._graph.ainvoke({
            "request": request,
            "model": request.model or self.model,
            "tools_enabled": self.enable_tools and request.enable_tools,
            "started_at": time.perf_counter(),
            "warnings": [],
        })

        usage = state["usage"]
        cost = state["cost"]
        outcomes = state.get("outcomes", [])
        duration_ms = (time.perf_counter() - state["started_at"]) * 1000
        intent = state.get("intent")
        logger.info(
            "Turn %s done in %.0fms — %d tool calls, %d tokens, $%s",
            state["conversation_id"], duration_ms, len(outcomes),
            usage.total_tokens, cost.total_cost,
        )
        metrics.record_turn(
            state["model"],
            tokens=usage.total_tokens,
            cost_usd=float(cost.total_cost),
            tool_calls=len(outcomes),
        )
        return TurnResult(
            reply=state["reply"],
            conversation_id=state["conversation_id"],
            tool_results=tuple(outcomes),
            metadata={
                "model": state["model"],
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
                "cost": cost.as_dict(),
                "duration_ms": round(duration_ms, 1),
                "tool_calls": len(outcomes),
                "intent": intent.current_intent if intent else None,
                "summary_scheduled": state.get("summary_scheduled", False),
                "warnings": list(state.get("warnings", [])),
            },
        )

    async def get_conversation_history(
        self, conversation_id: str, limit: int | None = None
    ) -> list[StoredMessage]:
        context = await self.store.get_context(conversation_id, limit)
        return list(context.messages) if context else []

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await self.store.delete_conversation(conversation_id)

    def get_status(self) -> dict[str, Any]:
        status = self.registry.get_status()
        status["metrics"] = {
            name: {
                "total_calls": m.total_calls,
                "successful_calls": m.successful_calls,
                "failed_calls": m.failed_calls,
                "average_duration_ms": round(m.average_duration_ms, 1),
                "error_rate": round(m.error_rate, 4),
                "last_used": m.last_used.isoformat() if m.last_used else None,
            }
            for name, m in self.registry.get_all_metrics().items()
        }
        status.update(self.summarization.status())
        return status

    async def shutdown(self) -> None:
        await self.summarization.drain()
        await self.registry.cleanup()

    # ── Graph assembly ────────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("resolve_conversation", self._resolve_conversation)
        graph.add_node("persist_user_message", self._persist_user_message)
        graph.add_node("analyze_intent", self._analyze_intent)
        graph.add_node("schedule_summary", self._schedule_summary)
        graph.add_node("build_prompt", self._build_prompt)
        graph.add_node("complete", self._complete_primary)
        graph.add_node("run_tools", self._run_tools)
        graph.add_node("follow_up", self._follow_up)
        graph.add_node("compute_cost", self._compute_cost)
        graph.add_node("persist_results", self._persist_results)

        graph.set_entry_point("resolve_conversation")
        graph.add_edge("resolve_conversation", "persist_user_message")
        graph.add_edge("persist_user_message", "analyze_intent")
        graph.add_edge("analyze_intent", "schedule_summary")
        graph.add_edge("schedule_summary", "build_prompt")
        graph.add_edge("build_prompt", "complete")
        graph.add_conditional_edges(
            "complete",
            should_run_tools,
            {"run_tools": "run_tools", "compute_cost": "compute_cost"},
        )
        graph.add_edge("run_tools", "follow_up")
        graph.add_edge("follow_up", "compute_cost")
        graph.add_edge("compute_cost", "persist_results")
        graph.add_edge("persist_results", END)

        return graph.compile()

    # ── Nodes ─────────────────────────────────────────────────────────

    async def _resolve_conversation(self, state: TurnState) -> dict:
        request = state["request"]
        warnings: list[str] = []
        # The current message is appended after the stored window
        window = max(self.max_history - 1, 0)

        try:
            conversation = None
            if request.conversation_id:
                conversation = await self.store.get_conversation(request.conversation_id)
                if conversation is None:
                    logger.warning(
                        "Conversation %s not found; starting it with an empty context",
                        request.conversation_id,
                    )
                    warnings.append(
                        f"Conversation {request.conversation_id} was not found; "
                        "started a new conversation with that id"
                    )
            if conversation is None:
                conversation = await self.store.create_conversation(
                    request.user_id, request.conversation_id
                )
            context = await self.store.get_context(conversation.id, window)
        except Exception as exc:
            logger.exception("Failed to load conversation %s", request.conversation_id)
            return {
                "conversation_id": request.conversation_id or str(uuid.uuid4()),
                "history": [],
                "warnings": [f"Conversation could not be loaded: {exc}"],
            }

        return {
            "conversation_id": conversation.id,
            "history": list(context.messages) if context else [],
            "warnings": warnings,
        }

    async def _persist_user_message(self, state: TurnState) -> dict:
        try:
            message = await self.store.create_message(
                state["conversation_id"], Role.USER, state["request"].message
            )
        except Exception as exc:
            logger.exception("Failed to persist user message for %s", state["conversation_id"])
            return {"user_message_id": None, "warnings": [f"User message was not saved: {exc}"]}
        return {"user_message_id": message.id}

    async def _analyze_intent(self, state: TurnState) -> dict:
        if self.intent_analyzer is None:
            return {"intent": None}
        conversation_id = state["conversation_id"]
        message_id = state.get("user_message_id")
        if message_id is None:
            return {"intent": None, "warnings": ["Intent analysis skipped: user message was not saved"]}

        try:
            intent = await asyncio.wait_for(
                self.intent_analyzer.analyze(conversation_id, message_id, state["request"].message),
                self.completion_timeout,
            )
            return {"intent": intent}
        except Exception as exc:
            logger.warning("Intent analysis failed for %s: %r", conversation_id, exc)
            warning = f"Intent analysis failed: {type(exc).__name__}"

        try:
            previous = await self.intent_analyzer.latest(conversation_id)
        except Exception:
            logger.exception("Failed to load previous intent analysis for %s", conversation_id)
            previous = None
        return {"intent": previous, "warnings": [warning]}

    async def _schedule_summary(self, state: TurnState) -> dict:
        if self.summarizer is None:
            return {"summary_scheduled": False}
        conversation_id = state["conversation_id"]
        summarizer = self.summarizer
        timeout = self.completion_timeout
        scheduled = self.summarization.schedule(
            conversation_id,
            lambda: asyncio.wait_for(summarizer.check_and_summarize(conversation_id), timeout),
        )
        return {"summary_scheduled": scheduled}

    async def _build_prompt(self, state: TurnState) -> dict:
        system = get_system_prompt()
        try:
            batch = await self.store.get_latest_summary_batch(state["conversation_id"])
        except Exception:
            logger.exception("Failed to load summaries for %s", state["conversation_id"])
            batch = None
        if batch is not None and batch.summaries:
            system = f"{system}\n\n{format_summary_guidance(batch)}"
        intent = state.get("intent")
        if intent is not None:
            system = f"{system}\n\n{format_intent_guidance(intent)}"

        history = state.get("history", [])
        window = max(self.max_history - 1, 0)
        history = history[-window:] if window else []

        prompt: list[BaseMessage] = [SystemMessage(content=system)]
        prompt.extend(to_langchain_messages(history))
        prompt.append(HumanMessage(content=state["request"].message))

        schemas = self.registry.get_callable_schemas() if state["tools_enabled"] else []
        return {"prompt": prompt, "tool_schemas": schemas}

    async def _complete_primary(self, state: TurnState) -> dict:
        completion = await self._complete(state["model"], state["prompt"], state["tool_schemas"])
        return {"first": completion, "outcomes": [], "follow_up": None}

    async def _run_tools(self, state: TurnState) -> dict:
        request = state["request"]
        calls = state["first"].tool_calls
        context = ToolContext(
            conversation_id=state["conversation_id"],
            message_id=state.get("user_message_id"),
            user_id=request.user_id,
            model=state["model"],
        )
        semaphore = asyncio.Semaphore(self.max_tool_concurrency)

        async def run(call: ToolCallRequest) -> ToolResult:
            async with semaphore:
                return await self._execute_call(call, context)

        logger.debug("Running %d tool calls: %s", len(calls), [c.name for c in calls])
        results = await asyncio.gather(*(run(call) for call in calls))
        return {"outcomes": [ToolCallOutcome(call, result) for call, result in zip(calls, results)]}

    async def _follow_up(self, state: TurnState) -> dict:
        first = state["first"]
        outcomes = state["outcomes"]
        messages = [
            *state["prompt"],
            tool_call_message(first.content, [o.call for o in outcomes]),
            *tool_result_messages(outcomes),
        ]
        completion = await self._complete(state["model"], messages, state["tool_schemas"])
        if completion.tool_calls:
            logger.info(
                "Follow-up requested %d more tool calls; ignoring them",
                len(completion.tool_calls),
            )
        return {"follow_up": completion}

    async def _compute_cost(self, state: TurnState) -> dict:
        first = state["first"]
        follow_up = state.get("follow_up")
        usage = (first.usage + follow_up.usage) if follow_up else first.usage
        reply = (follow_up.content if follow_up else "") or first.content

        search_calls = sum(
            int(o.result.metadata.get("search_calls", 0) or 0) for o in state.get("outcomes", [])
        )
        cost = self._cost.cost(
            state["model"],
            usage,
            SearchUsage(search_calls) if search_calls else None,
        )
        return {"usage": usage, "cost": cost, "reply": reply}

    async def _persist_results(self, state: TurnState) -> dict:
        conversation_id = state["conversation_id"]
        warnings: list[str] = []

        try:
            assistant = await self.store.create_message(conversation_id, Role.ASSISTANT, state["reply"])
        except Exception as exc:
            logger.exception("Failed to persist assistant message for %s", conversation_id)
            warnings.append(f"Assistant message was not saved: {exc}")
            assistant = None

        outcomes = state.get("outcomes", [])
        if assistant is not None and outcomes:
            rows = [
                ToolUsageRow(
                    message_id=assistant.id,
                    call_id=o.call.call_id,
                    tool_name=o.call.name,
                    input=o.call.arguments if isinstance(o.call.arguments, dict) else {},
                    output=o.result.data,
                    status="COMPLETED" if o.result.success else "FAILED",
                    error=o.result.error,
                    duration_ms=o.result.duration_ms,
                )
                for o in outcomes
            ]
            try:
                await self.store.create_tool_usage_rows(rows)
            except Exception as exc:
                logger.exception("Failed to persist tool usage for %s", conversation_id)
                warnings.append(f"Tool usage was not saved: {exc}")

        completions = [("primary", state["first"])]
        if state.get("follow_up") is not None:
            completions.append(("follow_up", state["follow_up"]))
        message_id = assistant.id if assistant else state.get("user_message_id")
        for subtype, completion in completions:
            try:
                await self.store.create_usage_record(UsageRecord(
                    operation=OperationType.CHAT_COMPLETION,
                    operation_subtype=subtype,
                    model=state["model"],
                    input_tokens=completion.usage.input_tokens,
                    output_tokens=completion.usage.output_tokens,
                    cost=float(self._cost.cost(state["model"], completion.usage).total_cost),
                    conversation_id=conversation_id,
                    message_id=message_id,
                ))
            except Exception as exc:
                logger.exception("Failed to persist %s usage for %s", subtype, conversation_id)
                warnings.append(f"Usage record was not saved: {exc}")

        usage = state["usage"]
        try:
            await self.store.update_aggregate_totals(
                conversation_id,
                usage.input_tokens,
                usage.output_tokens,
                float(state["cost"].total_cost),
            )
        except Exception as exc:
            logger.exception("Failed to update aggregates for %s", conversation_id)
            warnings.append(f"Conversation totals were not updated: {exc}")

        return {"warnings": warnings}

    # ── Internal ──────────────────────────────────────────────────────

    async def _complete(
        self,
        model: str,
        messages: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]],
    ) -> Completion:
        try:
            return await asyncio.wait_for(
                self.provider.complete(model, messages, tools or None),
                self.completion_timeout,
            )
        except CompletionProviderError:
            raise
        except TimeoutError as exc:
            raise CompletionProviderError(
                f"Completion call to {model} timed out after {self.completion_timeout:.0f}s"
            ) from exc
        except Exception as exc:
            raise CompletionProviderError(f"Completion call to {model} failed: {exc}") from exc

    async def _execute_call(self, call: ToolCallRequest, context: ToolContext) -> ToolResult:
        if not isinstance(call.arguments, dict):
            logger.warning("Tool call %s (%s) has malformed arguments", call.call_id, call.name)
            return ToolResult(
                success=False,
                error=INVALID_INPUT_ERROR,
                metadata={"failure_reason": "malformed_arguments"},
            )
        return await self.registry.execute_tool(call.name, call.arguments, context)


def should_run_tools(state: TurnState) -> str:
    """Route to tool execution when the primary completion requested tools."""
    if state["first"].tool_calls:
        return "run_tools"
    return "compute_cost"


# ── Factory ──────────────────────────────────────────────────────────


def create_agent(
    *,
    store: ConversationStore | None = None,
    provider: CompletionProvider | None = None,
    registry: ToolRegistry | None = None,
) -> AgentOrchestrator:
    """Build the orchestrator with its default collaborators."""
    store = store or InMemoryConversationStore()
    orchestrator = AgentOrchestrator(
        store=store,
        provider=provider or AnthropicCompletionProvider(),
        registry=registry or create_tool_registry(usage_sink=store.create_usage_record),
        intent_analyzer=LLMIntentAnalyzer(store),
        summarizer=TopicSummarizer(store),
    )
    logger.debug(
        "Agent ready — model: %s, tools: %s",
        orchestrator.model, orchestrator.registry.names(),
    )
    return orchestrator
