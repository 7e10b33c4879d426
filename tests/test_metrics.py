"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from chat_agent.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        if enabled:
            # no background thread in tests
            with patch.object(MetricsClient, "_start_flush_thread"):
                return MetricsClient()
        return MetricsClient()


class TestMetricsRecording:
    """Verify that record_success / record_failure buffer the right data."""

    def test_record_success_appends_count_and_latency(self):
        client = _make_client()
        client.record_success("anthropic", "complete", latency_ms=812.0)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Calls/Count", "Calls/Latency"}

    def test_record_failure_appends_count_and_error(self):
        client = _make_client()
        client.record_failure("tool", "web_search", error_type="retries_exhausted")
        # no latency since default 0
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Calls/Count", "Calls/Errors"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = _make_client()
        client.record_failure("tool", "web_search", error_type="circuit_open", latency_ms=3.0)
        assert len(client._buffer) == 3

    def test_failure_dimensions_include_operation_and_error_type(self):
        client = _make_client()
        client.record_failure("anthropic", "intent_analysis", error_type="ParseError")
        error_metric = next(m for m in client._buffer if m["MetricName"] == "Calls/Errors")
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map == {
            "Service": "anthropic",
            "Operation": "intent_analysis",
            "ErrorType": "ParseError",
        }

    def test_success_dimensions_include_service_and_status(self):
        client = _make_client()
        client.record_success("tool", "get_current_time", latency_ms=1.0)
        count_metric = next(m for m in client._buffer if m["MetricName"] == "Calls/Count")
        dim_map = {d["Name"]: d["Value"] for d in count_metric["Dimensions"]}
        assert dim_map == {"Service": "tool", "Status": "success"}


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_drops_buffer(self):
        client = _make_client()
        client.record_success("tool", "web_search", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("anthropic", "complete", latency_ms=100.0)
        assert client.flush() == 2

        mock_cw.put_metric_data.assert_called_once()
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE == "ChatAgent"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_success("anthropic", "complete", latency_ms=1.0)
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0


class TestTurnMetrics:
    def test_record_turn_emits_one_point_per_measure(self):
        client = _make_client()
        client.record_turn("claude-sonnet-4-5", tokens=1530, cost_usd=0.0184, tool_calls=2)
        values = {m["MetricName"]: m["Value"] for m in client._buffer}
        assert values == {
            "Turns/Count": 1,
            "Turns/Tokens": 1530,
            "Turns/CostUSD": 0.0184,
            "Turns/ToolCalls": 2,
        }

    def test_turn_points_are_keyed_by_model(self):
        client = _make_client()
        client.record_turn("claude-haiku-4-5", tokens=10, cost_usd=0.0, tool_calls=0)
        for point in client._buffer:
            assert point["Dimensions"] == [{"Name": "Model", "Value": "claude-haiku-4-5"}]

    def test_large_buffers_are_sent_in_chunks(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        for _ in range(300):
            client.record_turn("m", tokens=1, cost_usd=0.0, tool_calls=0)
        assert client.flush() == 1200
        assert client._cw_client.put_metric_data.call_count == 2
