"""
Prometheus metrics for Robot Extract API
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from .. import config

# Build info
BUILD_INFO = Gauge(
    'robot_build_info',
    'Build information',
    ['version']
)

# Request counters
REQUESTS_TOTAL = Counter(
    'robot_requests_total',
    'Total number of HTTP requests',
    ['status_class']
)

# Jobs reaching a terminal state
JOBS_TOTAL = Counter(
    'robot_jobs_total',
    'Jobs by terminal status',
    ['status', 'mode']
)

EXTRACTION_LATENCY = Histogram(
    'robot_extraction_latency_ms',
    'End-to-end extraction latency in milliseconds',
    buckets=[250, 500, 1000, 2500, 5000, 10000, 20000, 40000, 60000]
)

CACHE_HITS_TOTAL = Counter(
    'robot_cache_hits_total',
    'Requests served from the result cache'
)

CREDIT_REJECTED_TOTAL = Counter(
    'robot_credit_rejected_total',
    'Credit charges refused by the ledger',
    ['reason']
)

RATE_LIMITED_TOTAL = Counter(
    'robot_rate_limited_total',
    'Requests refused by the rate limiter'
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    'robot_webhook_deliveries_total',
    'Webhook deliveries by final outcome',
    ['outcome']
)

WEBHOOK_ATTEMPTS_TOTAL = Counter(
    'robot_webhook_attempts_total',
    'Individual webhook delivery attempts'
)

WEBHOOK_DLQ_DEPTH = Gauge(
    'robot_webhook_dlq_depth',
    'Failed webhook deliveries held in the dead-letter directory'
)

SCHEDULE_FIRED_TOTAL = Counter(
    'robot_schedule_fired_total',
    'Schedules fired by cron ticks'
)


class PrometheusMetrics:
    """Prometheus metrics manager"""

    def __init__(self):
        BUILD_INFO.labels(version=config.API_VERSION).set(1)

    def increment_requests(self, status_code: int):
        if 200 <= status_code < 300:
            status_class = "2xx"
        elif 400 <= status_code < 500:
            status_class = "4xx"
        elif status_code >= 500:
            status_class = "5xx"
        else:
            status_class = "other"
        REQUESTS_TOTAL.labels(status_class=status_class).inc()

    def record_job(self, status: str, mode: str, latency_ms: int = None):
        JOBS_TOTAL.labels(status=status, mode=mode).inc()
        if latency_ms is not None:
            EXTRACTION_LATENCY.observe(latency_ms)

    def increment_cache_hit(self):
        CACHE_HITS_TOTAL.inc()

    def increment_credit_rejected(self, reason: str):
        CREDIT_REJECTED_TOTAL.labels(reason=reason).inc()

    def increment_rate_limited(self):
        RATE_LIMITED_TOTAL.inc()

    def record_webhook(self, outcome: str, attempts: int):
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome=outcome).inc()
        WEBHOOK_ATTEMPTS_TOTAL.inc(attempts)

    def set_webhook_dlq_depth(self, depth: int):
        WEBHOOK_DLQ_DEPTH.set(depth)

    def increment_schedule_fired(self, count: int = 1):
        SCHEDULE_FIRED_TOTAL.inc(count)

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest()

    def get_content_type(self) -> str:
        """Get the content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST


# Global metrics instance
prometheus_metrics = PrometheusMetrics()
