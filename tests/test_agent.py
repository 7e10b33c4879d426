"""Tests for the turn orchestrator.

The orchestrator is wired with the in-memory store, a scripted completion
provider and a registry of small test tools, so each test drives a whole
turn through the graph without network access.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from chat_agent.agent import AgentOrchestrator, should_run_tools, tool_result_messages
from chat_agent.contracts import (
    Completion,
    IntentAnalysisResult,
    OperationType,
    Role,
    SummaryBatch,
    TokenUsage,
    ToolCallOutcome,
    ToolCallRequest,
    ToolResult,
    TopicSummary,
    TurnRequest,
)
from chat_agent.errors import CompletionProviderError, PersistenceError
from chat_agent.services.store import InMemoryConversationStore
from chat_agent.tools.base import BaseTool, ToolConfig, ToolParameter
from chat_agent.tools.executor import INVALID_INPUT_ERROR
from chat_agent.tools.registry import ToolRegistry

MODEL = "claude-sonnet-4-5"


class SlowEchoTool(BaseTool):
    config = ToolConfig(name="echo", description="Echo text after a delay", retries=0)
    parameters = (
        ToolParameter(name="text", type="string", description="Text", required=True),
        ToolParameter(name="delay", type="number", description="Seconds to wait", default=0),
        ToolParameter(name="searches", type="integer", description="Billed searches", default=0),
    )

    async def execute_internal(self, params, context):
        await asyncio.sleep(params.get("delay", 0))
        return ToolResult(
            success=True,
            data=params["text"],
            metadata={"search_calls": params.get("searches", 0)},
        )


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(SlowEchoTool())
    return registry


def _completion(content="", *calls, input_tokens=100, output_tokens=50) -> Completion:
    return Completion(
        content=content,
        tool_calls=tuple(calls),
        usage=TokenUsage(input_tokens, output_tokens),
        model=MODEL,
    )


def _call(call_id: str, text: str, delay: float = 0, **extra) -> ToolCallRequest:
    return ToolCallRequest(name="echo", arguments={"text": text, "delay": delay, **extra}, call_id=call_id)


def _agent(provider, *, store=None, **kwargs) -> AgentOrchestrator:
    return AgentOrchestrator(
        store=store or InMemoryConversationStore(),
        provider=provider,
        registry=kwargs.pop("registry", None) or _registry(),
        model=MODEL,
        **kwargs,
    )


def _turn(agent, message="Hello", **kwargs):
    return asyncio.run(agent.process_turn(TurnRequest(message=message, **kwargs)))


# ── Turns without tools ──────────────────────────────────────────────


class TestPlainTurn:
    def test_single_completion_and_reply(self, scripted_provider):
        provider = scripted_provider(_completion("Hi there!"))
        result = _turn(_agent(provider))
        assert result.reply == "Hi there!"
        assert result.tool_results == ()
        assert len(provider.calls) == 1
        assert result.metadata["tool_calls"] == 0
        assert result.metadata["warnings"] == []

    def test_prompt_layout(self, scripted_provider):
        provider = scripted_provider(_completion("ok"))
        _turn(_agent(provider), message="What's new?")
        messages = provider.calls[0]["messages"]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[-1], HumanMessage)
        assert messages[-1].content == "What's new?"
        assert provider.calls[0]["tools"][0]["name"] == "echo"

    def test_tools_disabled_per_request(self, scripted_provider):
        provider = scripted_provider(_completion("ok"))
        _turn(_agent(provider), enable_tools=False)
        assert provider.calls[0]["tools"] is None

    def test_messages_are_persisted(self, scripted_provider):
        store = InMemoryConversationStore()
        result = _turn(_agent(scripted_provider(_completion("Hi!")), store=store), message="Hey")
        context = asyncio.run(store.get_context(result.conversation_id))
        assert [(m.role, m.content) for m in context.messages] == [
            (Role.USER, "Hey"),
            (Role.ASSISTANT, "Hi!"),
        ]

    def test_history_window_is_respected(self, scripted_provider):
        store = InMemoryConversationStore()

        async def seed():
            await store.create_conversation("anonymous", "c")
            for i in range(10):
                await store.create_message("c", Role.USER, f"q{i}")
                await store.create_message("c", Role.ASSISTANT, f"a{i}")

        asyncio.run(seed())
        provider = scripted_provider(_completion("ok"))
        _turn(_agent(provider, store=store, max_history=5), message="latest", conversation_id="c")
        messages = provider.calls[0]["messages"]
        # system prompt + 4 stored messages + current message
        assert len(messages) == 6
        assert [m.content for m in messages[1:-1]] == ["q8", "a8", "q9", "a9"]
        assert messages[-1].content == "latest"


# ── Tool turns ───────────────────────────────────────────────────────


class TestToolTurn:
    def test_results_keep_request_order_under_varied_delays(self, scripted_provider):
        provider = scripted_provider(
            _completion("Let me check.", _call("a", "A", 0.05), _call("b", "B", 0.0), _call("c", "C", 0.02)),
            _completion("All done."),
        )
        result = _turn(_agent(provider))
        assert [o.call.call_id for o in result.tool_results] == ["a", "b", "c"]
        assert [o.result.data for o in result.tool_results] == ["A", "B", "C"]
        assert result.reply == "All done."

        follow_up = provider.calls[1]["messages"]
        assert isinstance(follow_up[-4], AIMessage)
        assert [tc["id"] for tc in follow_up[-4].tool_calls] == ["a", "b", "c"]
        tool_messages = follow_up[-3:]
        assert all(isinstance(m, ToolMessage) for m in tool_messages)
        assert [m.tool_call_id for m in tool_messages] == ["a", "b", "c"]

    def test_tool_calls_run_concurrently(self, scripted_provider):
        provider = scripted_provider(
            _completion("", _call("a", "A", 0.2), _call("b", "B", 0.2), _call("c", "C", 0.2)),
            _completion("done"),
        )
        result = _turn(_agent(provider, max_tool_concurrency=3))
        assert result.metadata["duration_ms"] < 550

    def test_invalid_tool_input_still_yields_reply(self, scripted_provider):
        bad = ToolCallRequest(name="echo", arguments={"delay": 0}, call_id="bad")
        provider = scripted_provider(_completion("", bad), _completion("Sorry, that failed."))
        result = _turn(_agent(provider))
        (outcome,) = result.tool_results
        assert outcome.result.success is False
        assert outcome.result.error == INVALID_INPUT_ERROR
        assert result.reply == "Sorry, that failed."

    def test_malformed_arguments_are_reported_to_the_model(self, scripted_provider):
        bad = ToolCallRequest(name="echo", arguments="not json", call_id="bad")
        provider = scripted_provider(_completion("", bad), _completion("Recovered."))
        result = _turn(_agent(provider))
        assert result.tool_results[0].result.metadata["failure_reason"] == "malformed_arguments"
        assert result.reply == "Recovered."

    def test_unknown_tool_is_a_failed_result(self, scripted_provider):
        call = ToolCallRequest(name="teleport", arguments={}, call_id="t1")
        provider = scripted_provider(_completion("", call), _completion("No such tool."))
        result = _turn(_agent(provider))
        assert result.tool_results[0].result.success is False
        assert result.reply == "No such tool."

    def test_empty_follow_up_falls_back_to_first_content(self, scripted_provider):
        provider = scripted_provider(_completion("Checking…", _call("a", "A")), _completion(""))
        assert _turn(_agent(provider)).reply == "Checking…"

    def test_tool_usage_rows_are_persisted(self, scripted_provider):
        store = InMemoryConversationStore()
        provider = scripted_provider(_completion("", _call("a", "A")), _completion("done"))
        _turn(_agent(provider, store=store))
        (row,) = store.tool_usage_rows()
        assert row.call_id == "a"
        assert row.tool_name == "echo"
        assert row.status == "COMPLETED"
        assert row.output == "A"


# ── Cost and accounting ──────────────────────────────────────────────


class TestCost:
    def test_cost_covers_both_completions_and_searches(self, scripted_provider):
        provider = scripted_provider(
            _completion("", _call("a", "A", searches=2), input_tokens=1_000_000, output_tokens=0),
            _completion("done", input_tokens=0, output_tokens=1_000_000),
        )
        result = _turn(_agent(provider))
        cost = result.metadata["cost"]
        assert result.metadata["input_tokens"] == 1_000_000
        assert result.metadata["output_tokens"] == 1_000_000
        assert cost["input_cost"] == 3.0
        assert cost["output_cost"] == 15.0
        assert cost["search_calls"] == 2
        assert cost["search_cost"] == 0.02
        assert cost["total_cost"] == pytest.approx(18.02)

    def test_usage_records_and_aggregates(self, scripted_provider):
        store = InMemoryConversationStore()
        provider = scripted_provider(
            _completion("", _call("a", "A"), input_tokens=200, output_tokens=10),
            _completion("done", input_tokens=300, output_tokens=40),
        )
        result = _turn(_agent(provider, store=store))
        records = store.usage_records(result.conversation_id)
        chat = [r for r in records if r.operation is OperationType.CHAT_COMPLETION]
        assert [r.operation_subtype for r in chat] == ["primary", "follow_up"]

        conversation = asyncio.run(store.get_conversation(result.conversation_id))
        assert conversation.total_input_tokens == 500
        assert conversation.total_output_tokens == 50
        assert conversation.total_cost == pytest.approx(result.metadata["cost"]["total_cost"])


# ── Failure handling ─────────────────────────────────────────────────


class TestFailures:
    def test_completion_failure_fails_the_turn(self, scripted_provider):
        provider = scripted_provider(CompletionProviderError("overloaded"))
        with pytest.raises(CompletionProviderError):
            _turn(_agent(provider))

    def test_unexpected_provider_error_is_wrapped(self, scripted_provider):
        provider = scripted_provider(RuntimeError("socket closed"))
        with pytest.raises(CompletionProviderError, match="socket closed"):
            _turn(_agent(provider))

    def test_completion_timeout_fails_the_turn(self):
        class Hanging:
            async def complete(self, model, messages, tools=None):
                await asyncio.sleep(5)

        with pytest.raises(CompletionProviderError, match="timed out"):
            _turn(_agent(Hanging(), completion_timeout=0.05))

    def test_follow_up_failure_fails_the_turn(self, scripted_provider):
        provider = scripted_provider(_completion("", _call("a", "A")), CompletionProviderError("down"))
        with pytest.raises(CompletionProviderError):
            _turn(_agent(provider))

    def test_persistence_failure_is_reported_as_warning(self, scripted_provider):
        store = InMemoryConversationStore()
        store.update_aggregate_totals = AsyncMock(side_effect=PersistenceError("db locked"))
        result = _turn(_agent(scripted_provider(_completion("Hi")), store=store))
        assert result.reply == "Hi"
        assert any("totals" in w for w in result.metadata["warnings"])

    def test_user_message_failure_is_reported_as_warning(self, scripted_provider):
        store = InMemoryConversationStore()
        original = store.create_message

        async def flaky(conversation_id, role, content):
            if role == Role.USER:
                raise PersistenceError("disk full")
            return await original(conversation_id, role, content)

        store.create_message = flaky
        result = _turn(_agent(scripted_provider(_completion("Hi")), store=store))
        assert result.reply == "Hi"
        assert any("User message was not saved" in w for w in result.metadata["warnings"])

    def test_unknown_conversation_id_is_created_with_warning(self, scripted_provider):
        store = InMemoryConversationStore()
        result = _turn(_agent(scripted_provider(_completion("Hi")), store=store), conversation_id="ghost")
        assert result.conversation_id == "ghost"
        assert asyncio.run(store.get_conversation("ghost")) is not None
        assert any("ghost" in w for w in result.metadata["warnings"])


# ── Intent analysis and summaries ────────────────────────────────────


class TestEnrichment:
    def test_intent_guidance_is_added_to_system_prompt(self, scripted_provider):
        analyzer = MagicMock()
        analyzer.analyze = AsyncMock(return_value=IntentAnalysisResult(
            "Compare Python web frameworks", key_topics=("python", "web"),
        ))
        provider = scripted_provider(_completion("ok"))
        result = _turn(_agent(provider, intent_analyzer=analyzer))
        system = provider.calls[0]["messages"][0].content
        assert "Compare Python web frameworks" in system
        assert result.metadata["intent"] == "Compare Python web frameworks"

    def test_intent_failure_falls_back_to_previous_analysis(self, scripted_provider):
        analyzer = MagicMock()
        analyzer.analyze = AsyncMock(side_effect=RuntimeError("rate limited"))
        analyzer.latest = AsyncMock(return_value=IntentAnalysisResult("Earlier intent"))
        result = _turn(_agent(scripted_provider(_completion("ok")), intent_analyzer=analyzer))
        assert result.reply == "ok"
        assert "Intent analysis failed: RuntimeError" in result.metadata["warnings"]
        assert result.metadata["intent"] == "Earlier intent"

    def test_summary_guidance_is_added_to_system_prompt(self, scripted_provider):
        store = InMemoryConversationStore()

        async def seed():
            await store.create_conversation("anonymous", "c")
            await store.save_summary_batch(SummaryBatch(
                "b1", "c", (TopicSummary("Travel", "Trip to Lisbon in May"),), "m1", "m2", 2,
            ))

        asyncio.run(seed())
        provider = scripted_provider(_completion("ok"))
        _turn(_agent(provider, store=store), conversation_id="c")
        assert "Trip to Lisbon in May" in provider.calls[0]["messages"][0].content

    def test_summarization_runs_in_background(self, scripted_provider):
        summarizer = MagicMock()
        summarizer.check_and_summarize = AsyncMock(return_value=None)
        agent = _agent(scripted_provider(_completion("ok")), summarizer=summarizer)

        async def scenario():
            result = await agent.process_turn(TurnRequest(message="hi"))
            await agent.summarization.drain()
            return result

        result = asyncio.run(scenario())
        assert result.metadata["summary_scheduled"] is True
        summarizer.check_and_summarize.assert_awaited_once_with(result.conversation_id)

    def test_hung_summarization_times_out_and_frees_the_slot(self, scripted_provider):
        async def hang(conversation_id):
            await asyncio.sleep(3600)

        summarizer = MagicMock()
        summarizer.check_and_summarize = AsyncMock(side_effect=hang)
        provider = scripted_provider(_completion("first"), _completion("second"))
        agent = _agent(provider, summarizer=summarizer, completion_timeout=0.05)

        async def scenario():
            first = await agent.process_turn(TurnRequest(message="hi"))
            await asyncio.wait_for(agent.summarization.drain(), 1.0)
            assert not agent.summarization.is_active(first.conversation_id)
            second = await agent.process_turn(
                TurnRequest(message="again", conversation_id=first.conversation_id)
            )
            await asyncio.wait_for(agent.summarization.drain(), 1.0)
            return second

        second = asyncio.run(scenario())
        assert second.reply == "second"
        assert second.metadata["summary_scheduled"] is True
        assert summarizer.check_and_summarize.await_count == 2


# ── Helpers and status ───────────────────────────────────────────────


class TestHelpers:
    def test_routing(self):
        assert should_run_tools({"first": _completion("x")}) == "compute_cost"
        assert should_run_tools({"first": _completion("", _call("a", "A"))}) == "run_tools"

    def test_failed_result_message_has_error_status(self):
        outcome = ToolCallOutcome(_call("a", "A"), ToolResult(success=False, error="boom"))
        (message,) = tool_result_messages([outcome])
        assert message.status == "error"
        assert '"boom"' in message.content

    def test_status_includes_tools_and_summaries(self, scripted_provider):
        agent = _agent(scripted_provider(_completion("ok")))
        _turn(agent)
        status = agent.get_status()
        assert status["tool_names"] == ["echo"]
        assert status["metrics"]["echo"]["total_calls"] == 0
        assert status["active_summarizations"] == []

    def test_history_and_delete(self, scripted_provider):
        agent = _agent(scripted_provider(_completion("Hi")))
        result = _turn(agent, message="Hey")
        history = asyncio.run(agent.get_conversation_history(result.conversation_id))
        assert [m.content for m in history] == ["Hey", "Hi"]
        assert asyncio.run(agent.delete_conversation(result.conversation_id)) is True
        assert asyncio.run(agent.get_conversation_history(result.conversation_id)) == []
