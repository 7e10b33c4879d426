"""Shared test fixtures for the chat agent test suite."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("AGENT_SYSTEM_PROMPT", None)


class ScriptedProvider:
    """Completion provider that replays queued completions (or raises queued errors)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def complete(self, model, messages, tools=None):
        self.calls.append({"model": model, "messages": list(messages), "tools": tools})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def scripted_provider():
    """Factory fixture: ``scripted_provider(completion, ...)``."""
    return ScriptedProvider


@pytest.fixture
def mock_structured_llm():
    """Factory fixture for a ChatAnthropic stand-in with structured output.

    ``with_structured_output(...).ainvoke`` returns ``{"raw", "parsed",
    "parsing_error"}`` like the real runnable does with ``include_raw=True``.
    """

    def _make(parsed=None, *, input_tokens=100, output_tokens=20, error=None):
        raw = MagicMock()
        raw.usage_metadata = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        }
        structured = MagicMock()
        if error is not None:
            structured.ainvoke = AsyncMock(side_effect=error)
        else:
            structured.ainvoke = AsyncMock(return_value={
                "raw": raw,
                "parsed": parsed,
                "parsing_error": None if parsed is not None else ValueError("bad json"),
            })
        llm = MagicMock()
        llm.with_structured_output.return_value = structured
        return llm

    return _make
