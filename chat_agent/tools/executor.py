"""Resilient execution of a single tool.

Three composable pieces wrap a tool's ``execute_internal``:

* ``with_timeout``        — races one attempt against a timer
* ``CircuitBreaker.call`` — fails fast while the tool is unhealthy
* ``retry_with_backoff``  — re-runs failed attempts with exponential backoff

``ResilientToolExecutor`` applies them in a fixed order::

    validate → retry( breaker( timeout( execute_internal ) ) )

and turns every outcome into a ``ToolResult``.  Tool errors never escape
as exceptions; cancellation always does.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, TypeVar

from chat_agent.config import (
    TOOL_INITIAL_BACKOFF_SECONDS,
    TOOL_MAX_RETRIES,
    TOOL_TIMEOUT_SECONDS,
)
from chat_agent.contracts import OperationType, SearchUsage, ToolContext, ToolResult, UsageRecord
from chat_agent.errors import (
    CircuitOpenError,
    RetriesExhaustedError,
    ToolExecutionError,
    ToolTimeoutError,
    ValidationError,
)
from chat_agent.services.cost import CostCalculator, default_calculator
from chat_agent.services.metrics import metrics
from chat_agent.tools.base import BaseTool
from chat_agent.tools.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")

UsageSink = Callable[[UsageRecord], Awaitable[Any]]

INVALID_INPUT_ERROR = "Invalid input parameters"


# ── Decorators ──────────────────────────────────────────────────────


def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout_seconds: float,
    *,
    name: str,
) -> Callable[..., Awaitable[T]]:
    """Wrap ``func`` so each call raises ``ToolTimeoutError`` after ``timeout_seconds``."""

    async def attempt(*args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout_seconds)
        except TimeoutError as exc:
            if isinstance(exc, ToolTimeoutError):
                raise
            raise ToolTimeoutError(name, timeout_seconds) from exc

    return attempt


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    initial_backoff: float,
    name: str = "",
    give_up_on: tuple[type[BaseException], ...] = (CircuitOpenError, ValidationError),
    should_abort: Callable[[], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``func`` up to ``max_retries + 1`` times.

    The delay before retry *n* is ``initial_backoff * 2 ** (n - 1)``.
    Exceptions in ``give_up_on`` are re-raised immediately.  When every
    attempt fails, or ``should_abort()`` turns true after a failure,
    ``RetriesExhaustedError`` carries the attempts made and the last error.
    """
    attempts = max_retries + 1
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except give_up_on:
            raise
        except Exception as exc:
            last_error = exc
            if attempt == attempts:
                break
            if should_abort is not None and should_abort():
                logger.warning(
                    "%s attempt %d/%d failed (%s). Not retrying.",
                    name or "call", attempt, attempts, type(exc).__name__,
                )
                attempts = attempt
                break
            backoff = initial_backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s attempt %d/%d failed (%s). Retrying in %.1fs…",
                name or "call", attempt, attempts, type(exc).__name__, backoff,
            )
            await sleep(backoff)

    raise RetriesExhaustedError(attempts, last_error) from last_error


# ── Usage metrics ───────────────────────────────────────────────────


@dataclass
class ToolUsageMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    average_duration_ms: float = 0.0
    error_rate: float = 0.0
    last_used: datetime | None = None


class ToolMetrics:
    """Mutex-guarded usage counters for one tool."""

    def __init__(self) -> None:
        self._data = ToolUsageMetrics()
        self._lock = threading.Lock()

    def record(self, success: bool, duration_ms: float) -> None:
        with self._lock:
            data = self._data
            data.total_calls += 1
            if success:
                data.successful_calls += 1
            else:
                data.failed_calls += 1
            # running mean over every call so far
            data.average_duration_ms += (duration_ms - data.average_duration_ms) / data.total_calls
            data.error_rate = data.failed_calls / data.total_calls
            data.last_used = datetime.now(UTC)

    def snapshot(self) -> ToolUsageMetrics:
        with self._lock:
            return replace(self._data)


# ── Executor ────────────────────────────────────────────────────────


class ResilientToolExecutor:
    """Runs one tool with validation, timeout, circuit breaker and retries."""

    def __init__(
        self,
        tool: BaseTool,
        *,
        breaker: CircuitBreaker | None = None,
        usage_sink: UsageSink | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        initial_backoff: float = TOOL_INITIAL_BACKOFF_SECONDS,
        cost_calculator: CostCalculator = default_calculator,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.tool = tool
        self.breaker = breaker or CircuitBreaker(tool.name, ignore=(ValidationError,))
        self.metrics = ToolMetrics()
        self.timeout = timeout or tool.config.timeout or TOOL_TIMEOUT_SECONDS
        if max_retries is None:
            max_retries = tool.config.retries if tool.config.retries is not None else TOOL_MAX_RETRIES
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._usage_sink = usage_sink
        self._cost = cost_calculator
        self._sleep = sleep
        self._timed_attempt = with_timeout(tool.execute_internal, self.timeout, name=tool.name)

    async def execute(self, payload: Any, context: ToolContext | None = None) -> ToolResult:
        context = context or ToolContext()
        start = time.perf_counter()

        try:
            params = self.tool.validate(payload)
        except ValidationError as exc:
            logger.info("Tool %s rejected input: %s", self.tool.name, exc)
            result = ToolResult(
                success=False,
                error=INVALID_INPUT_ERROR,
                metadata={"failure_reason": "validation", "detail": str(exc)},
            )
            return await self._finish(result, start, context, primary_success=False)

        try:
            result = await retry_with_backoff(
                lambda: self.breaker.call(self._attempt, params, context),
                max_retries=self.max_retries,
                initial_backoff=self.initial_backoff,
                name=f"Tool {self.tool.name}",
                should_abort=lambda: self.breaker.state is CircuitState.OPEN,
                sleep=self._sleep,
            )
        except ValidationError as exc:
            logger.info("Tool %s rejected parameters while running: %s", self.tool.name, exc)
            result = ToolResult(
                success=False,
                error=INVALID_INPUT_ERROR,
                metadata={"failure_reason": "validation", "detail": str(exc)},
            )
        except CircuitOpenError as exc:
            logger.warning("Tool %s short-circuited: %s", self.tool.name, exc)
            result = await self._degrade(
                params,
                context,
                reason="circuit_open",
                error=f"Tool '{self.tool.name}' is temporarily unavailable (circuit open)",
            )
        except RetriesExhaustedError as exc:
            logger.error("Tool %s gave up: %s", self.tool.name, exc)
            # fewer attempts than allowed means the breaker tripped mid-retry
            if exc.attempts <= self.max_retries:
                reason = "circuit_open"
                error = (
                    f"Tool '{self.tool.name}' is temporarily unavailable "
                    f"(circuit opened after {exc.attempts} attempts: {exc.last_error})"
                )
            else:
                reason = "retries_exhausted"
                error = (
                    f"Tool '{self.tool.name}' failed after {exc.attempts} attempts: "
                    f"{exc.last_error}"
                )
            result = await self._degrade(params, context, reason=reason, error=error)
        else:
            return await self._finish(result, start, context, primary_success=True)

        return await self._finish(result, start, context, primary_success=False)

    # ── Internal ──────────────────────────────────────────────────────

    async def _attempt(self, params: Any, context: ToolContext) -> ToolResult:
        """One timeout-bounded attempt; a reported failure raises so it is retried."""
        result = await self._timed_attempt(params, context)
        if not result.success:
            raise ToolExecutionError(result.error or f"Tool '{self.tool.name}' reported failure")
        return result

    async def _degrade(
        self,
        params: Any,
        context: ToolContext,
        *,
        reason: str,
        error: str,
    ) -> ToolResult:
        metadata = {
            "failure_reason": reason,
            "circuit_state": self.breaker.state.value,
            "degraded": True,
        }
        if not self.tool.has_fallback:
            return ToolResult(success=False, error=error, metadata=metadata)

        try:
            fallback = await self.tool.fallback(params, context)
        except Exception as exc:
            logger.exception("Fallback for tool %s failed", self.tool.name)
            return ToolResult(
                success=False,
                error=f"{error}; fallback failed: {exc}",
                metadata=metadata,
            )
        fallback.metadata = {**fallback.metadata, **metadata, "fallback": True}
        if not fallback.success and not fallback.error:
            fallback.error = error
        return fallback

    async def _finish(
        self,
        result: ToolResult,
        start: float,
        context: ToolContext,
        *,
        primary_success: bool,
    ) -> ToolResult:
        result.duration_ms = (time.perf_counter() - start) * 1000
        try:
            self.metrics.record(primary_success, result.duration_ms)
            if primary_success:
                metrics.record_success("tool", self.tool.name, latency_ms=result.duration_ms)
            else:
                metrics.record_failure(
                    "tool",
                    self.tool.name,
                    error_type=result.metadata.get("failure_reason", "error"),
                    latency_ms=result.duration_ms,
                )
        except Exception:
            logger.exception("Failed to record metrics for tool %s", self.tool.name)

        if context.message_id and self._usage_sink is not None:
            try:
                await self._usage_sink(self._usage_record(result, context, primary_success))
            except Exception:
                logger.exception("Failed to persist usage for tool %s", self.tool.name)
        return result

    def _usage_record(
        self,
        result: ToolResult,
        context: ToolContext,
        success: bool,
    ) -> UsageRecord:
        model = context.model or "unknown"
        search_calls = int(result.metadata.get("search_calls", 0) or 0)
        surcharge = 0.0
        if search_calls:
            surcharge = float(self._cost.search_cost(SearchUsage(search_calls), model))
        return UsageRecord(
            operation=OperationType.TOOL_CALL,
            operation_subtype=self.tool.name,
            model=model,
            input_tokens=0,
            output_tokens=0,
            search_calls=search_calls,
            cost=surcharge,
            conversation_id=context.conversation_id,
            message_id=context.message_id,
            success=success,
            duration_ms=result.duration_ms,
        )
