from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION_SECONDS = Histogram(
    "request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limiter",
    ["bucket"],
)
RATE_LIMIT_BLOCKED_KEYS = Gauge(
    "rate_limit_blocked_keys",
    "Keys currently blocked per limiter",
    ["bucket"],
)
PERFORMANCE_ALERTS_TOTAL = Counter(
    "performance_alerts_total",
    "Performance threshold alerts raised",
    ["metric", "level"],
)
SECURITY_ALERTS_TOTAL = Counter(
    "security_alerts_total",
    "Security alerts raised by monitors and analysis",
    ["type"],
)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "REQUEST_DURATION_SECONDS",
    "RATE_LIMIT_REJECTIONS_TOTAL",
    "RATE_LIMIT_BLOCKED_KEYS",
    "PERFORMANCE_ALERTS_TOTAL",
    "SECURITY_ALERTS_TOTAL",
    "generate_latest",
]
