"""Prometheus metrics definitions."""

from prometheus_client import Counter, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================

# HTTP handlers (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)

# Provisioning runs several cluster round trips (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.39, 0.77, 1.5,
    3, 6, 12, 23, 46,
    91, 180,
)

# =============================================================================
# HTTP
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "wsplane_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "wsplane_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Provisioning
# =============================================================================

PROVISION_TOTAL = Counter(
    "wsplane_provision_total",
    "Workspace provisioning runs by outcome",
    ["result"],  # success, failure
)

PROVISION_DURATION = Histogram(
    "wsplane_provision_duration_seconds",
    "Duration of a full provisioning run",
    buckets=_BUCKETS_SLOW,
)

COMPENSATION_TOTAL = Counter(
    "wsplane_compensation_total",
    "Compensating actions executed during rollback",
    ["step", "result"],  # result: success, failure
)

# =============================================================================
# Routing
# =============================================================================

ROUTE_REBUILDS_TOTAL = Counter(
    "wsplane_route_rebuilds_total",
    "Aggregate route rebuilds",
    ["result"],  # success, failure
)

ROUTE_CAS_CONFLICTS_TOTAL = Counter(
    "wsplane_route_cas_conflicts_total",
    "resourceVersion conflicts while updating route membership",
)

# =============================================================================
# Reconciliation
# =============================================================================

RECONCILE_TOTAL = Counter(
    "wsplane_reconcile_total",
    "Reconciliation passes by path and outcome",
    ["path", "result"],  # path: passive, active, probe; result: changed, unchanged, failed, skipped
)

WORKSPACE_ACTIONS_TOTAL = Counter(
    "wsplane_workspace_actions_total",
    "Lifecycle actions by type and outcome",
    ["action", "result"],  # result: success, conflict, failure
)


def _init_metrics() -> None:
    """Pre-create label combinations so dashboards show 0 instead of no data."""
    for result in ("success", "failure"):
        PROVISION_TOTAL.labels(result=result)
        ROUTE_REBUILDS_TOTAL.labels(result=result)
    for path in ("passive", "active", "probe"):
        for result in ("changed", "unchanged", "failed", "skipped"):
            RECONCILE_TOTAL.labels(path=path, result=result)
    for action in ("start", "stop", "restart"):
        for result in ("success", "conflict", "failure"):
            WORKSPACE_ACTIONS_TOTAL.labels(action=action, result=result)


_init_metrics()
