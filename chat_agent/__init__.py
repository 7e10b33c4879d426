"""Chat Agent — a conversational agent backend with resilient tool use.

Architecture Overview
=====================

Each user message is one **turn**, run as a LangGraph state machine
(``chat_agent/agent.py``): load the conversation, store the message,
analyze intent, schedule background summarization, build the prompt, call
the model, run any requested tools, call the model again with the tool
results, compute cost and persist everything.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain_anthropic.ChatAnthropic``.  The main model
  answers; a cheaper analysis model handles intent analysis, topic
  summaries and web search.
- **Resilient tools**: every tool call goes through the same pipeline:
  input validation, then retries with exponential backoff around a
  per-tool circuit breaker around a per-attempt timeout.  Tool failures
  are returned to the model as data, never raised.
- **Ordered results**: tool calls run concurrently but their results go
  back to the model in the order the model asked for them, tagged with
  the provider's call ids.
- **Cost tracking**: ``Decimal`` pricing per model plus per-search
  surcharges, rounded to 6 places; every operation writes a usage record.
- **Degrade, don't fail**: only a failed completion call fails a turn.
  Enrichment and persistence failures are logged and surfaced as turn
  warnings.
- **Dual Interface**: FastAPI server (production) + CLI chat loop
  (development/testing).

Package Structure
-----------------
- ``chat_agent/agent.py`` — turn orchestration (LangGraph StateGraph)
- ``chat_agent/config.py`` — configuration from environment / SSM
- ``chat_agent/contracts.py`` — shared value objects
- ``chat_agent/errors.py`` — error taxonomy
- ``chat_agent/prompts.py`` — system and analysis prompts
- ``chat_agent/server.py`` — FastAPI application
- ``chat_agent/main.py`` — CLI chat interface
- ``chat_agent/services/`` — completion provider, store, cost, intent,
  summarization, cache and metrics
- ``chat_agent/tools/`` — tool base class, resilience layer, registry and
  the concrete tools
- ``chat_agent/api/`` — FastAPI routes and Pydantic schemas
"""
