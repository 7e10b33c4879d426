"""LLM completion provider.

The orchestrator only depends on the ``CompletionProvider`` protocol: one
async call that takes LangChain messages and optional tool schemas and
returns a normalised ``Completion`` (text, requested tool calls, token
usage).  ``AnthropicCompletionProvider`` implements it on top of
``ChatAnthropic``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage

from chat_agent.config import AGENT_MAX_TOKENS, AGENT_TEMPERATURE, ANTHROPIC_API_KEY
from chat_agent.contracts import Completion, TokenUsage, ToolCallRequest
from chat_agent.errors import CompletionProviderError
from chat_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    async def complete(
        self,
        model: str,
        messages: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> Completion: ...


def to_anthropic_tool(schema: dict[str, Any]) -> dict[str, Any]:
    """Convert a registry tool schema to Anthropic's tool definition format."""
    return {
        "name": schema["name"],
        "description": schema["description"],
        "input_schema": schema["parameters"],
    }


def message_text(message: BaseMessage) -> str:
    """Concatenate the text blocks of a (possibly multi-block) message."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def to_completion(message: AIMessage, model: str) -> Completion:
    usage = message.usage_metadata or {}
    return Completion(
        content=message_text(message),
        tool_calls=tuple(
            ToolCallRequest(name=call["name"], arguments=call.get("args") or {}, call_id=call["id"])
            for call in message.tool_calls
        ),
        usage=TokenUsage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        ),
        model=(message.response_metadata or {}).get("model") or model,
    )


class AnthropicCompletionProvider:
    """``CompletionProvider`` backed by ``langchain_anthropic.ChatAnthropic``.

    One client is built per model name and reused across turns.
    """

    def __init__(
        self,
        *,
        api_key: str = ANTHROPIC_API_KEY,
        temperature: float = AGENT_TEMPERATURE,
        max_tokens: int = AGENT_MAX_TOKENS,
    ) -> None:
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._clients: dict[str, ChatAnthropic] = {}

    def _client(self, model: str) -> ChatAnthropic:
        client = self._clients.get(model)
        if client is None:
            client = ChatAnthropic(
                model=model,
                api_key=self._api_key,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
            self._clients[model] = client
        return client

    async def complete(
        self,
        model: str,
        messages: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> Completion:
        llm = self._client(model)
        runnable = llm.bind_tools([to_anthropic_tool(t) for t in tools]) if tools else llm

        t0 = time.perf_counter()
        try:
            response = await runnable.ainvoke(list(messages))
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "complete",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise CompletionProviderError(f"Completion call to {model} failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "complete", latency_ms=elapsed)
        completion = to_completion(response, model)
        logger.debug(
            "Completion from %s in %.0fms — %d tool calls, %d tokens",
            model, elapsed, len(completion.tool_calls), completion.usage.total_tokens,
        )
        return completion
