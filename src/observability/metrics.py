"""Prometheus metric definitions for failure-mode service self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
REMOTE_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 15.0)

# ---------------------------------------------------------------------------
# API request metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "amfe_failure_modes_request_duration_seconds",
    "End-to-end API request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "amfe_failure_modes_requests_total",
    "Total number of API requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Remote backend metrics
# ---------------------------------------------------------------------------

REMOTE_REQUEST_DURATION = Histogram(
    "amfe_failure_modes_remote_request_duration_seconds",
    "Duration of individual remote table requests in seconds",
    labelnames=["operation"],
    buckets=REMOTE_DURATION_BUCKETS,
)

REMOTE_REQUESTS_TOTAL = Counter(
    "amfe_failure_modes_remote_requests_total",
    "Total number of remote table requests",
    labelnames=["operation", "status"],
)

# ---------------------------------------------------------------------------
# Resilience metrics
# ---------------------------------------------------------------------------

RETRY_ATTEMPTS_TOTAL = Counter(
    "amfe_failure_modes_retry_attempts_total",
    "Number of retries scheduled after a failed attempt",
    labelnames=["operation"],
)

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "amfe_failure_modes_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    labelnames=["operation"],
)

OFFLINE_FALLBACKS_TOTAL = Counter(
    "amfe_failure_modes_offline_fallbacks_total",
    "Queries served from the local offline store",
    labelnames=["operation", "reason"],
)

CACHE_LOOKUPS_TOTAL = Counter(
    "amfe_failure_modes_cache_lookups_total",
    "In-memory catalogue cache lookups",
    labelnames=["result"],
)

OFFLINE_STORE_RECORDS = Gauge(
    "amfe_failure_modes_offline_store_records",
    "Number of failure modes held in the local offline store after the last refresh",
)

CONNECTIVITY_ONLINE = Gauge(
    "amfe_failure_modes_connectivity_online",
    "Whether the backend is considered reachable (1=online, 0=offline)",
)

APP_INFO = Info(
    "amfe_failure_modes",
    "Failure-mode service build information",
)
