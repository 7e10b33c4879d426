"""Error taxonomy for the chat agent.

Tool-level errors (validation, timeout, open circuit, domain failure) are
raised *inside* the resilience layer and converted into
``ToolResult(success=False)`` before they reach the orchestrator, so the
model can react to them.  Turn-level errors (``CompletionProviderError``)
propagate to the caller as a failed turn.  ``PersistenceError`` is logged
and swallowed wherever it is caught.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ValidationError(AgentError):
    """Tool input did not match the tool's declared parameters."""


class ToolTimeoutError(AgentError, TimeoutError):
    """A tool attempt did not finish within its timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout_seconds:.1f}s"
        )


class CircuitOpenError(AgentError):
    """Raised by a circuit breaker that rejects a call without attempting it."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit for '{name}' is open; retry in {retry_after:.1f}s"
        )


class ToolExecutionError(AgentError):
    """A tool's domain logic failed."""


class RetriesExhaustedError(AgentError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class ToolNotFoundError(AgentError):
    """No tool is registered under the requested name."""


class ToolRegistrationError(AgentError):
    """Invalid tool configuration, e.g. a duplicate tool name."""


class CompletionProviderError(AgentError):
    """The LLM completion call failed.  Fatal to the turn."""


class PersistenceError(AgentError):
    """A conversation-store write failed."""
