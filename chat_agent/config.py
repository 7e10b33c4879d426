"""Centralized configuration for the chat agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/chat-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/chat-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /chat-agent/{name} (AWS)."
    )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Cheap model for side analyses (intent analysis, topic summaries, search)
ANALYSIS_MODEL_NAME: str = os.getenv("ANALYSIS_MODEL_NAME", "claude-haiku-4-5")

AGENT_TEMPERATURE: float = float(os.getenv("AGENT_TEMPERATURE", "0.7"))
AGENT_MAX_TOKENS: int = int(os.getenv("AGENT_MAX_TOKENS", "2000"))
COMPLETION_TIMEOUT_SECONDS: float = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))

# Replaces the built-in system prompt when set
AGENT_SYSTEM_PROMPT: str | None = os.getenv("AGENT_SYSTEM_PROMPT") or None

# ── Turn protocol ───────────────────────────────────────────────────
AGENT_ENABLE_TOOLS: bool = _env_bool("AGENT_ENABLE_TOOLS", True)
MAX_CONVERSATION_HISTORY: int = int(os.getenv("MAX_CONVERSATION_HISTORY", "20"))
MAX_TOOL_CONCURRENCY: int = int(os.getenv("MAX_TOOL_CONCURRENCY", "4"))
SUMMARY_TURN_THRESHOLD: int = int(os.getenv("SUMMARY_TURN_THRESHOLD", "3"))

# ── Tool resilience ─────────────────────────────────────────────────
TOOL_TIMEOUT_SECONDS: float = float(os.getenv("TOOL_TIMEOUT_SECONDS", "30"))
TOOL_MAX_RETRIES: int = int(os.getenv("TOOL_MAX_RETRIES", "2"))
TOOL_INITIAL_BACKOFF_SECONDS: float = float(os.getenv("TOOL_INITIAL_BACKOFF_SECONDS", "1.0"))
CIRCUIT_FAILURE_THRESHOLD: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
CIRCUIT_RECOVERY_TIMEOUT_SECONDS: float = float(
    os.getenv("CIRCUIT_RECOVERY_TIMEOUT_SECONDS", "60")
)
CIRCUIT_SUCCESS_THRESHOLD: int = int(os.getenv("CIRCUIT_SUCCESS_THRESHOLD", "3"))

# ── Web search ──────────────────────────────────────────────────────
WEB_SEARCH_MAX_USES: int = int(os.getenv("WEB_SEARCH_MAX_USES", "3"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
