"""Web search tool.

Runs the search through Anthropic's server-side ``web_search`` tool using
the cheap analysis model, and returns titles, URLs and cited snippets.
Every successful result is kept in an LRU cache; when the search backend is
unavailable (retries exhausted or circuit open) the fallback serves the
cached result for the same query, marked as stale.

Each provider-side search is billed separately, so the number of searches
performed is reported in ``ToolResult.metadata["search_calls"]`` for cost
accounting.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage, HumanMessage
from pydantic import BaseModel, Field

from chat_agent.config import ANALYSIS_MODEL_NAME, ANTHROPIC_API_KEY, WEB_SEARCH_MAX_USES
from chat_agent.contracts import ToolContext, ToolResult
from chat_agent.errors import ToolExecutionError
from chat_agent.services.cache import LRUCache
from chat_agent.tools.base import BaseTool, ToolConfig, ToolParameter

logger = logging.getLogger(__name__)

SERVER_TOOL_TYPE = "web_search_20250305"
MAX_RESULTS_LIMIT = 20

SEARCH_PROMPT = (
    'Search the web for: "{query}".\n'
    "Return a concise factual summary of the most relevant findings "
    "(at most {max_results} sources), citing your sources."
)


class WebSearchInput(BaseModel):
    query: str = Field(..., min_length=1)
    max_results: int = 10
    include_domains: list[str] = Field(default_factory=list)
    exclude_domains: list[str] = Field(default_factory=list)


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _blocks(message: BaseMessage) -> list[dict[str, Any]]:
    content = message.content
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return [b for b in content if isinstance(b, dict)]


def extract_results(message: BaseMessage) -> list[dict[str, Any]]:
    """Collect unique search hits, attaching the first cited snippet per URL."""
    snippets: dict[str, str] = {}
    for block in _blocks(message):
        if block.get("type") != "text":
            continue
        for citation in block.get("citations") or []:
            url = _get(citation, "url")
            if url and url not in snippets:
                snippets[url] = _get(citation, "cited_text") or ""

    results: list[dict[str, Any]] = []
    seen: set[str] = set()
    for block in _blocks(message):
        if block.get("type") != "web_search_tool_result":
            continue
        items = block.get("content")
        if not isinstance(items, list):
            continue
        for item in items:
            url = _get(item, "url")
            if _get(item, "type") != "web_search_result" or not url or url in seen:
                continue
            seen.add(url)
            results.append({
                "title": _get(item, "title") or "",
                "url": url,
                "snippet": snippets.get(url, ""),
                "published_date": _get(item, "page_age"),
            })
    return results


def extract_summary(message: BaseMessage) -> str:
    return "".join(b.get("text", "") for b in _blocks(message) if b.get("type") == "text").strip()


def search_error(message: BaseMessage) -> str | None:
    """Return the provider's error code if the search itself failed."""
    for block in _blocks(message):
        if block.get("type") == "web_search_tool_result":
            content = block.get("content")
            if isinstance(content, dict) and content.get("error_code"):
                return content["error_code"]
    return None


def count_search_calls(message: BaseMessage) -> int:
    """Number of billed searches, from usage metadata or the tool-use blocks."""
    usage = (message.response_metadata or {}).get("usage")
    requests = _get(_get(usage, "server_tool_use"), "web_search_requests") if usage else None
    if requests is not None:
        return int(requests)
    return sum(
        1
        for b in _blocks(message)
        if b.get("type") == "server_tool_use" and b.get("name") == "web_search"
    )


def _cache_key(params: WebSearchInput) -> str:
    return "|".join([
        " ".join(params.query.lower().split()),
        ",".join(sorted(params.include_domains)),
        ",".join(sorted(params.exclude_domains)),
    ])


class WebSearchTool(BaseTool):
    config = ToolConfig(
        name="web_search",
        description=(
            "Search the web for current information and return relevant results "
            "with titles, URLs, and snippets"
        ),
        timeout=30.0,
        retries=2,
    )
    parameters = (
        ToolParameter(
            name="query",
            type="string",
            description="The search query to execute. Should be clear and specific.",
            required=True,
            examples=(
                "latest developments in AI technology",
                "climate change effects on agriculture",
            ),
        ),
        ToolParameter(
            name="max_results",
            type="number",
            description="Maximum number of search results to return (1-20)",
            default=10,
            examples=(5, 10, 15),
        ),
        ToolParameter(
            name="include_domains",
            type="array",
            description="Domains to restrict the search to",
            items={"type": "string", "description": "Domain name (e.g., github.com)"},
            examples=(["github.com", "stackoverflow.com"],),
        ),
        ToolParameter(
            name="exclude_domains",
            type="array",
            description="Domains to exclude from search results",
            items={"type": "string", "description": "Domain name (e.g., spam.com)"},
            examples=(["spam.com"],),
        ),
    )
    input_model = WebSearchInput
    has_fallback = True

    def __init__(
        self,
        llm: ChatAnthropic | None = None,
        *,
        cache: LRUCache | None = None,
        max_uses: int = WEB_SEARCH_MAX_USES,
    ) -> None:
        self._llm = llm or ChatAnthropic(
            model=ANALYSIS_MODEL_NAME,
            api_key=ANTHROPIC_API_KEY,
            temperature=0.0,
            max_tokens=1024,
        )
        self._cache = cache or LRUCache()
        self._max_uses = max_uses

    def _server_tool(self, params: WebSearchInput) -> dict[str, Any]:
        tool: dict[str, Any] = {
            "type": SERVER_TOOL_TYPE,
            "name": "web_search",
            "max_uses": self._max_uses,
        }
        # The provider accepts either an allow list or a block list, not both
        if params.include_domains:
            tool["allowed_domains"] = params.include_domains
            if params.exclude_domains:
                logger.info("web_search: include_domains set, ignoring exclude_domains")
        elif params.exclude_domains:
            tool["blocked_domains"] = params.exclude_domains
        return tool

    async def execute_internal(self, params: WebSearchInput, context: ToolContext) -> ToolResult:
        max_results = min(max(params.max_results, 1), MAX_RESULTS_LIMIT)
        t0 = time.perf_counter()

        llm = self._llm.bind_tools([self._server_tool(params)])
        prompt = SEARCH_PROMPT.format(query=params.query.strip(), max_results=max_results)
        response = await llm.ainvoke([HumanMessage(content=prompt)])

        error_code = search_error(response)
        results = extract_results(response)[:max_results]
        if error_code and not results:
            raise ToolExecutionError(f"Web search failed: {error_code}")

        data = {
            "query": params.query,
            "results": results,
            "summary": extract_summary(response),
            "total_results": len(results),
            "search_time_ms": round((time.perf_counter() - t0) * 1000),
        }
        self._cache.put(_cache_key(params), data)
        logger.debug("web_search %r → %d results", params.query, len(results))
        return ToolResult(
            success=True,
            data=data,
            metadata={"search_calls": count_search_calls(response)},
        )

    async def fallback(self, params: WebSearchInput, context: ToolContext) -> ToolResult:
        entry = self._cache.get_entry(_cache_key(params))
        if entry is None:
            return ToolResult(
                success=False,
                error="Web search is unavailable and no cached results exist for this query",
            )
        age = max(0, round(time.time() - entry.stored_at))
        logger.info("web_search serving cached results for %r (%ds old)", params.query, age)
        return ToolResult(
            success=True,
            data={**entry.value, "stale": True, "cached_age_seconds": age},
            metadata={"search_calls": 0},
        )
