"""Tests for gateway statistics and request tracing."""

import json
import re
import time

from kirogate.gateway.stats import GatewayStats, RequestLog
from kirogate.gateway.tracing import RequestTracer


def _entry(success=True, credential_id="acct-1", model="claude-sonnet-4.5", **kwargs):
    values = dict(
        timestamp=time.time(),
        path="/v1/chat/completions",
        model=model,
        credential_id=credential_id,
        input_tokens=5,
        output_tokens=7,
        response_time=0.5,
        success=success,
    )
    values.update(kwargs)
    return RequestLog(**values)


class TestGatewayStats:
    """Tests for GatewayStats."""

    def test_success_and_failure_counters(self):
        stats = GatewayStats()
        for _ in range(3):
            stats.record_started()
        stats.record_finished(_entry())
        stats.record_finished(_entry())
        stats.record_finished(_entry(success=False, error="boom"))

        assert stats.total_requests == 3
        assert stats.success_requests == 2
        assert stats.failed_requests == 1
        assert stats.total_tokens == 24

    def test_account_breakdown(self):
        stats = GatewayStats()
        stats.record_finished(_entry(response_time=1.0))
        stats.record_finished(_entry(success=False, response_time=3.0))

        account = stats.to_dict()["account_stats"]["acct-1"]
        assert account["requests"] == 2
        assert account["errors"] == 1
        assert account["tokens"] == 12
        assert account["avg_response_time"] == 2.0

    def test_model_breakdown_counts_successes(self):
        stats = GatewayStats()
        stats.record_finished(_entry(model="a"))
        stats.record_finished(_entry(model="b", success=False))

        assert stats.to_dict()["model_stats"] == {"a": {"requests": 1, "tokens": 12}}

    def test_endpoint_outcomes(self):
        stats = GatewayStats()
        stats.record_endpoint("CodeWhisperer", "quota")
        stats.record_endpoint("AmazonQ", "success")
        stats.record_endpoint("AmazonQ", "failure")

        endpoints = stats.to_dict()["endpoint_stats"]
        assert endpoints["CodeWhisperer"] == {"requests": 1, "successes": 0, "failures": 1, "quota_errors": 1}
        assert endpoints["AmazonQ"]["successes"] == 1
        assert endpoints["AmazonQ"]["failures"] == 1

    def test_ring_buffer_keeps_newest(self):
        stats = GatewayStats(max_recent=3)
        for i in range(5):
            stats.record_finished(_entry(model=f"m{i}"))

        assert [e["model"] for e in stats.recent(10)] == ["m2", "m3", "m4"]
        assert [e["model"] for e in stats.recent(2)] == ["m3", "m4"]

    def test_resize(self):
        stats = GatewayStats(max_recent=5)
        for i in range(5):
            stats.record_finished(_entry(model=f"m{i}"))

        stats.resize(2)

        assert [e["model"] for e in stats.recent(10)] == ["m3", "m4"]

    def test_summary_keys(self):
        summary = GatewayStats().summary()

        assert set(summary) == {"total_requests", "success_requests", "failed_requests", "total_tokens", "uptime"}


class TestRequestTracer:
    """Tests for RequestTracer."""

    def test_trace_id_format(self):
        tracer = RequestTracer()
        body = {"messages": [{"role": "user", "content": "Please write a poem"}]}

        trace_id = tracer.generate_trace_id(body)

        assert re.fullmatch(r"00001_\d{6}_1msgs_Please_write_a", trace_id)

    def test_trace_id_from_content_blocks(self):
        tracer = RequestTracer()
        body = {"messages": [{"role": "user", "content": [{"type": "text", "text": "hello there"}]}]}

        assert tracer.generate_trace_id(body).endswith("_1msgs_hello_there")

    def test_trace_id_counter_increments(self):
        tracer = RequestTracer()

        first = tracer.generate_trace_id({})
        second = tracer.generate_trace_id({})

        assert first.startswith("00001_")
        assert second.startswith("00002_")
        assert first.endswith("_0msgs_empty")

    def test_no_debug_dir_writes_nothing(self, tmp_path):
        tracer = RequestTracer()

        tracer.save_debug("trace", "1_request.json", {"a": 1})

        assert tracer.debug_dir is None
        assert list(tmp_path.iterdir()) == []

    def test_save_debug(self, tmp_path):
        tracer = RequestTracer(debug_dir=tmp_path)

        tracer.save_debug("trace", "1_request.json", {"a": 1})

        written = list(tmp_path.glob("*/trace/1_request.json"))
        assert len(written) == 1
        assert json.loads(written[0].read_text()) == {"a": 1}
