"""
Tests for Prometheus metrics functionality
"""

from prometheus_client import REGISTRY

from robot_api.services.prometheus_metrics import PrometheusMetrics, prometheus_metrics


def _value(name, **labels):
    return REGISTRY.get_sample_value(name, labels or None) or 0.0


class TestPrometheusMetrics:
    """Test the PrometheusMetrics class."""

    def test_increment_requests_by_status_class(self):
        before = _value("robot_requests_total", status_class="4xx")
        metrics = PrometheusMetrics()
        metrics.increment_requests(404)
        metrics.increment_requests(429)
        assert _value("robot_requests_total", status_class="4xx") == before + 2

    def test_record_job(self):
        before = _value("robot_jobs_total", status="completed", mode="sync")
        count_before = _value("robot_extraction_latency_ms_count")
        prometheus_metrics.record_job("completed", "sync", latency_ms=1200)
        assert _value("robot_jobs_total", status="completed", mode="sync") == before + 1
        assert _value("robot_extraction_latency_ms_count") == count_before + 1

    def test_webhook_counters(self):
        before = _value("robot_webhook_attempts_total")
        prometheus_metrics.record_webhook("failed", 3)
        assert _value("robot_webhook_attempts_total") == before + 3

    def test_dlq_depth_gauge(self):
        prometheus_metrics.set_webhook_dlq_depth(4)
        assert _value("robot_webhook_dlq_depth") == 4

    def test_schedule_fired(self):
        before = _value("robot_schedule_fired_total")
        prometheus_metrics.increment_schedule_fired(2)
        assert _value("robot_schedule_fired_total") == before + 2

    def test_exposition_format(self):
        text = prometheus_metrics.get_metrics().decode()
        assert "robot_build_info" in text
        assert "robot_credit_rejected_total" in text
        assert prometheus_metrics.get_content_type().startswith("text/plain")
