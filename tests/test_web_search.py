"""Tests for the web search tool and its cached fallback."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from chat_agent.contracts import ToolContext
from chat_agent.errors import ToolExecutionError
from chat_agent.services.cache import LRUCache
from chat_agent.tools.executor import ResilientToolExecutor
from chat_agent.tools.web_search import (
    WebSearchInput,
    WebSearchTool,
    count_search_calls,
    extract_results,
)


def _search_response(*, requests: int | None = 1, error_code: str | None = None) -> AIMessage:
    if error_code:
        result_block = {
            "type": "web_search_tool_result",
            "tool_use_id": "srvtoolu_1",
            "content": {"type": "web_search_tool_result_error", "error_code": error_code},
        }
    else:
        result_block = {
            "type": "web_search_tool_result",
            "tool_use_id": "srvtoolu_1",
            "content": [
                {"type": "web_search_result", "title": "Python 3.13", "url": "https://python.org/3.13",
                 "page_age": "2 days ago", "encrypted_content": "xx"},
                {"type": "web_search_result", "title": "Release notes", "url": "https://docs.python.org/whatsnew",
                 "encrypted_content": "yy"},
                {"type": "web_search_result", "title": "Duplicate", "url": "https://python.org/3.13",
                 "encrypted_content": "zz"},
            ],
        }
    usage = {"input_tokens": 900, "output_tokens": 120}
    if requests is not None:
        usage["server_tool_use"] = {"web_search_requests": requests}
    return AIMessage(
        content=[
            {"type": "server_tool_use", "id": "srvtoolu_1", "name": "web_search",
             "input": {"query": "python 3.13"}},
            result_block,
            {
                "type": "text",
                "text": "Python 3.13 shipped a new REPL.",
                "citations": [{
                    "type": "web_search_result_location",
                    "url": "https://python.org/3.13",
                    "title": "Python 3.13",
                    "cited_text": "The new interactive interpreter...",
                }],
            },
        ],
        response_metadata={"usage": usage},
    )


def _tool_with(response=None, *, error=None, cache=None):
    bound = MagicMock()
    bound.ainvoke = AsyncMock(return_value=response, side_effect=error)
    llm = MagicMock()
    llm.bind_tools.return_value = bound
    return WebSearchTool(llm, cache=cache or LRUCache(), max_uses=3), llm, bound


def _run(tool, **payload):
    return asyncio.run(tool.execute_internal(WebSearchInput(**payload), ToolContext()))


class TestResultParsing:
    def test_extracts_unique_results_with_snippets(self):
        results = extract_results(_search_response())
        assert [r["url"] for r in results] == ["https://python.org/3.13", "https://docs.python.org/whatsnew"]
        assert results[0]["snippet"] == "The new interactive interpreter..."
        assert results[0]["published_date"] == "2 days ago"
        assert results[1]["snippet"] == ""

    def test_search_count_from_usage_metadata(self):
        assert count_search_calls(_search_response(requests=2)) == 2

    def test_search_count_falls_back_to_tool_use_blocks(self):
        assert count_search_calls(_search_response(requests=None)) == 1

    def test_plain_text_response_has_no_results(self):
        assert extract_results(AIMessage(content="no search")) == []


class TestExecute:
    def test_returns_results_summary_and_search_calls(self):
        tool, _, _ = _tool_with(_search_response(requests=2))
        result = _run(tool, query="python 3.13")
        assert result.success is True
        assert result.data["total_results"] == 2
        assert result.data["summary"] == "Python 3.13 shipped a new REPL."
        assert result.metadata["search_calls"] == 2

    def test_max_results_truncates(self):
        tool, _, _ = _tool_with(_search_response())
        result = _run(tool, query="python", max_results=1)
        assert result.data["total_results"] == 1

    def test_server_tool_definition(self):
        tool, llm, _ = _tool_with(_search_response())
        _run(tool, query="python", include_domains=["python.org"], exclude_domains=["spam.com"])
        server_tool = llm.bind_tools.call_args.args[0][0]
        assert server_tool["type"] == "web_search_20250305"
        assert server_tool["name"] == "web_search"
        assert server_tool["max_uses"] == 3
        assert server_tool["allowed_domains"] == ["python.org"]
        assert "blocked_domains" not in server_tool

    def test_blocked_domains_when_only_exclusions_given(self):
        tool, llm, _ = _tool_with(_search_response())
        _run(tool, query="python", exclude_domains=["spam.com"])
        server_tool = llm.bind_tools.call_args.args[0][0]
        assert server_tool["blocked_domains"] == ["spam.com"]

    def test_provider_search_error_raises(self):
        tool, _, _ = _tool_with(_search_response(error_code="max_uses_exceeded"))
        with pytest.raises(ToolExecutionError, match="max_uses_exceeded"):
            _run(tool, query="python")


class TestFallback:
    def test_serves_stale_cached_results(self):
        cache = LRUCache()
        tool, _, _ = _tool_with(_search_response(), cache=cache)
        _run(tool, query="Python  3.13")

        fallback = asyncio.run(tool.fallback(WebSearchInput(query="python 3.13"), ToolContext()))
        assert fallback.success is True
        assert fallback.data["stale"] is True
        assert fallback.data["total_results"] == 2
        assert fallback.metadata["search_calls"] == 0

    def test_fails_without_cached_results(self):
        tool, _, _ = _tool_with(_search_response())
        fallback = asyncio.run(tool.fallback(WebSearchInput(query="never searched"), ToolContext()))
        assert fallback.success is False
        assert "no cached results" in fallback.error

    def test_executor_uses_cache_when_search_keeps_failing(self):
        cache = LRUCache()
        tool, _, bound = _tool_with(_search_response(), cache=cache)
        _run(tool, query="python")

        bound.ainvoke.side_effect = RuntimeError("search backend down")
        sleeps = []

        async def no_sleep(seconds):
            sleeps.append(seconds)

        executor = ResilientToolExecutor(tool, sleep=no_sleep)
        result = asyncio.run(executor.execute({"query": "python"}))
        assert result.success is True
        assert result.metadata["fallback"] is True
        assert result.metadata["failure_reason"] == "retries_exhausted"
        assert result.data["stale"] is True
        assert sleeps == [1.0, 2.0]
