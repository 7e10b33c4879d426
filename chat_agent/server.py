"""FastAPI server for the chat agent.

Run with:
    uvicorn chat_agent.server:app --host 0.0.0.0 --port 8000
or:
    python -m chat_agent.server
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from chat_agent.agent import create_agent
from chat_agent.api.routes import router
from chat_agent.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from chat_agent.services.metrics import metrics

API_PREFIX = "/api"
VERSION = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator once; on shutdown drain it and flush metrics.

    Background summaries are awaited before the process exits so no batch
    is lost halfway through being written.
    """
    agent = create_agent()
    application.state.agent = agent
    logger.info("Chat agent ready (model %s, tools: %s)", agent.model, ", ".join(agent.registry.names()))
    try:
        yield
    finally:
        agent = getattr(application.state, "agent", None)
        if agent is not None:
            await agent.shutdown()
        flushed = metrics.flush()
        logger.info("Chat agent stopped (%d metrics flushed)", flushed)


app = FastAPI(
    title="Chat Agent",
    description=(
        "Conversational agent with web search and time tools, "
        "resilient tool execution and per-turn cost tracking."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next) -> Response:
    """Tag every request with an ID and log it with its status and latency.

    A client-supplied ``X-Request-ID`` is reused so traces can span
    services; either way the ID is echoed back in the response header.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    t0 = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - t0) * 1000
    logger.info(
        "[%s] %s %s → %d (%.0fms)",
        request_id, request.method, request.url.path, response.status_code, elapsed_ms,
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Service info and the most useful links."""
    return {
        "service": "Chat Agent",
        "version": VERSION,
        "docs": "/docs",
        "health": f"{API_PREFIX}/health",
        "chat": f"{API_PREFIX}/chat",
        "tools": f"{API_PREFIX}/tools",
    }


def run() -> None:
    logger.info("Starting chat agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)


if __name__ == "__main__":
    run()
