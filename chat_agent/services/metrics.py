"""CloudWatch custom metrics for the chat agent.

Two families of data points are buffered in memory and pushed in batches
by a daemon thread:

* ``Calls/*``: one entry per call to an external dependency (the model
  provider for completions and side analyses, and every tool execution).
* ``Turns/*``: one entry per finished turn with its token count, its
  USD cost and the number of tool calls it made.

With ``METRICS_ENABLED`` unset or not ``"true"``, points are still
buffered (tests inspect them) but a flush drops them instead of calling
CloudWatch.

>>> from chat_agent.services.metrics import metrics
>>> metrics.record_success("anthropic", "complete", latency_ms=812.0)
>>> metrics.record_turn("claude-sonnet-4-5", tokens=1530, cost_usd=0.0184, tool_calls=2)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "ChatAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


class MetricsClient:
    """Buffers metric data points and ships them to CloudWatch."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ── Calls ─────────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._record(service, operation, "success", latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call.  Latency is only emitted when it was measured."""
        self._record(service, operation, "failure", latency_ms, error_type=error_type)

    def _record(
        self,
        service: str,
        operation: str,
        status: str,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        op_dims = {"Service": service, "Operation": operation}
        batch = [self._point("Calls/Count", {"Service": service, "Status": status}, 1, "Count")]
        if error_type is not None:
            batch.append(self._point("Calls/Errors", {**op_dims, "ErrorType": error_type}, 1, "Count"))
        if latency_ms > 0:
            batch.append(self._point("Calls/Latency", op_dims, latency_ms, "Milliseconds"))
        with self._lock:
            self._buffer.extend(batch)
        logger.debug(
            "Metric: %s.%s %s%s latency=%.1fms",
            service, operation, status,
            f" ({error_type})" if error_type else "", latency_ms,
        )

    # ── Turns ─────────────────────────────────────────────────────────

    def record_turn(self, model: str, *, tokens: int, cost_usd: float, tool_calls: int) -> None:
        dims = {"Model": model}
        batch = [
            self._point("Turns/Count", dims, 1, "Count"),
            self._point("Turns/Tokens", dims, tokens, "Count"),
            self._point("Turns/CostUSD", dims, cost_usd, "None"),
            self._point("Turns/ToolCalls", dims, tool_calls, "Count"),
        ]
        with self._lock:
            self._buffer.extend(batch)

    # ── Shipping ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Push everything buffered so far.  Returns how many points were sent."""
        with self._lock:
            pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        if not self._enabled:
            logger.debug("Dropping %d metric points (CloudWatch disabled)", len(pending))
            return 0

        sent = 0
        try:
            cw = self._client()
            for start in range(0, len(pending), MAX_BATCH_SIZE):
                chunk = pending[start : start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("CloudWatch flush failed after %d of %d points", sent, len(pending))
        else:
            logger.info("Flushed %d metric points to CloudWatch", sent)
        return sent

    def _client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    @staticmethod
    def _point(name: str, dimensions: dict[str, str], value: float, unit: str) -> dict[str, Any]:
        return {
            "MetricName": name,
            "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }

    def _start_flush_thread(self) -> None:
        def _run() -> None:
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush loop error")

        threading.Thread(target=_run, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("CloudWatch metrics enabled (flush every %ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
