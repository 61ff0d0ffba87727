"""Application metrics using the Prometheus client library.

One inventory of everything the service measures.  Other modules import
specific metrics and increment/observe them at the point of action.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # Matriculation requests wait on the LMS, so the upper buckets matter.
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Enrollment lifecycle metrics
# ---------------------------------------------------------------------------

MATRICULATION_ATTEMPTS = Counter(
    "matriculation_attempts_total",
    "false->true matriculation attempts by outcome",
    ["result"],  # matriculated|gate_rejected|lms_failed
)

TRIGGER_RUNS = Counter(
    "trigger_runs_total",
    "Matriculation trigger executions",
    ["trigger", "kind", "result"],  # kind: required|best_effort; result: ok|failed
)

RECONCILIATION_EVENTS = Counter(
    "reconciliation_events_total",
    "Inconsistent states that need out-of-band repair",
    ["operation"],  # revert_matriculation|unenroll
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "lms_reconciliation", "lms_unenroll_retry"
)
