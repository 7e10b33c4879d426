"""Tests for prompt assembly helpers."""

from __future__ import annotations

from unittest.mock import patch

from chat_agent.contracts import IntentAnalysisResult, Role, StoredMessage, SummaryBatch, TopicSummary
from chat_agent.prompts import (
    format_intent_guidance,
    format_summary_guidance,
    format_transcript,
    get_system_prompt,
)


class TestSystemPrompt:
    def test_mentions_tools_and_date(self):
        prompt = get_system_prompt()
        assert "web_search" in prompt
        assert "get_current_time" in prompt
        assert "Today is" in prompt

    def test_override_from_config(self):
        with patch("chat_agent.prompts.AGENT_SYSTEM_PROMPT", "You are a pirate."):
            assert get_system_prompt() == "You are a pirate."


class TestGuidance:
    def test_intent_guidance(self):
        text = format_intent_guidance(IntentAnalysisResult(
            "Book a flight",
            key_topics=("travel", "flights"),
            pending_questions=("Which airport?",),
        ))
        assert text.startswith("## Conversation analysis")
        assert "Book a flight" in text
        assert "travel, flights" in text
        assert "  - Which airport?" in text

    def test_intent_guidance_without_topics(self):
        text = format_intent_guidance(IntentAnalysisResult("Say hi"))
        assert "Key topics" not in text
        assert "Open questions" not in text

    def test_summary_guidance(self):
        batch = SummaryBatch(
            "b1", "c",
            (TopicSummary("Travel", "Lisbon in May"), TopicSummary("Budget", "Under 800 EUR")),
            "m1", "m8", 8,
        )
        assert format_summary_guidance(batch).splitlines() == [
            "## Earlier in this conversation",
            "- Travel: Lisbon in May",
            "- Budget: Under 800 EUR",
        ]

    def test_transcript(self):
        messages = [
            StoredMessage("1", "c", Role.USER, "hi"),
            StoredMessage("2", "c", Role.ASSISTANT, "hello"),
        ]
        assert format_transcript(messages) == "USER: hi\nASSISTANT: hello"
