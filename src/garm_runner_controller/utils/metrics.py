"""
Prometheus metrics for the GARM runner controller.
"""

from prometheus_client import Counter, Gauge

METRIC_NAMESPACE = "garm_operator"

# GARM API call accounting, one increment per logical call
GARM_CALLS = Counter(
    "api_requests_total",
    "Total number of GARM API calls",
    ["method"],
    namespace=METRIC_NAMESPACE,
)
GARM_CALL_ERRORS = Counter(
    "api_requests_errors_total",
    "Number of GARM API calls that failed",
    ["method"],
    namespace=METRIC_NAMESPACE,
)
GARM_JWT_EXPIRES_AT = Gauge(
    "info_jwt_expires_at",
    "Expiry date of obtained garm-server JWT",
    namespace=METRIC_NAMESPACE,
)

# Alignment results
RUNNER_DELETIONS = Counter(
    "runner_deletions_total",
    "Runner deletions requested by idle alignment",
    ["pool", "result"],
    namespace=METRIC_NAMESPACE,
)
IDLE_RUNNERS = Gauge(
    "idle_runners",
    "Idle runners observed in the last snapshot of a pool",
    ["pool"],
    namespace=METRIC_NAMESPACE,
)
