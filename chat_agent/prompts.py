"""Prompts for the chat agent and its side analyses."""

from __future__ import annotations

from datetime import UTC, datetime

from chat_agent.config import AGENT_SYSTEM_PROMPT
from chat_agent.contracts import IntentAnalysisResult, StoredMessage, SummaryBatch

SYSTEM_PROMPT_TEMPLATE = """You are a helpful AI assistant with access to web search capabilities.
You can search the web to find current information and provide accurate, up-to-date responses.
When you need to search for information, use the `web_search` tool.
When the user refers to relative dates ("yesterday", "last week") and you are unsure of
today's date, use the `get_current_time` tool.
Always be helpful, accurate, and cite your sources when using web search results.

Today is {current_date} ({current_day_of_week}), {current_time} UTC."""


def get_system_prompt() -> str:
    """Build the system prompt with the current date injected.

    ``AGENT_SYSTEM_PROMPT`` replaces the built-in template when set.
    """
    if AGENT_SYSTEM_PROMPT:
        return AGENT_SYSTEM_PROMPT
    now = datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
    )


def format_intent_guidance(analysis: IntentAnalysisResult) -> str:
    """Render an intent analysis as extra guidance appended to the system prompt."""
    lines = [
        "## Conversation analysis",
        f"- Current intent: {analysis.current_intent}",
        f"- Relationship to earlier conversation: {analysis.relationship_to_history}",
        f"- Relevance of earlier context: {analysis.contextual_relevance}",
    ]
    if analysis.key_topics:
        lines.append(f"- Key topics: {', '.join(analysis.key_topics)}")
    if analysis.pending_questions:
        lines.append("- Open questions still to address:")
        lines.extend(f"  - {q}" for q in analysis.pending_questions)
    return "\n".join(lines)


def format_transcript(messages: list[StoredMessage] | tuple[StoredMessage, ...]) -> str:
    return "\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)


# ── Intent analysis ──────────────────────────────────────────────────

INTENT_ANALYSIS_PROMPT = """You are an expert conversation analyst. Analyze the user's \
current prompt in the context of their conversation history.

- current_intent: a specific description (2-4 sentences) of what the user wants to \
achieve, including the kind of action requested and any constraints they mentioned. \
If it is a follow-up, say what it builds on.
- contextual_relevance: how much the earlier conversation matters for this prompt \
(high, medium or low).
- relationship_to_history: continuation, new_topic or clarification.
- key_topics: the main topics of the current prompt.
- pending_questions: questions from earlier in the conversation that still need an answer."""

INTENT_ANALYSIS_INPUT = """CONVERSATION CONTEXT:
{context}

PREVIOUS ANALYSIS:
{previous}

CURRENT USER PROMPT:
{prompt}"""


# ── Topic summaries ──────────────────────────────────────────────────

TOPIC_SUMMARY_PROMPT = """You summarize conversations by topic. Split the transcript \
below into its distinct topics (at most {max_topics}). For each topic give a short \
topic_name, a factual summary_text that preserves names, numbers and decisions, and \
any related_topics. Do not invent details."""


def format_summary_guidance(batch: SummaryBatch) -> str:
    """Render the latest topic summaries as background for the system prompt."""
    lines = ["## Earlier in this conversation"]
    for topic in batch.summaries:
        lines.append(f"- {topic.topic_name}: {topic.summary_text}")
    return "\n".join(lines)
