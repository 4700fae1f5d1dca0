"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (wsplane-control-plane)
- component: Component name (LC, RP, PX, RC, TM, API)
- event: Event type (provision_complete, compensation_failed, etc.)
- trace_id: Request trace ID

High cardinality fields (OK in logs, NOT in metric labels):
- ws_id: Workspace ID
- group_id: Group ID
- namespace: Cluster namespace
- user_id: User ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Lifecycle events
    WORKSPACE_CREATED = "workspace_created"
    WORKSPACE_DELETED = "workspace_deleted"
    ACTION_PERFORMED = "action_performed"
    STATE_CHANGED = "state_changed"
    SETTING_CHANGED = "setting_changed"

    # Provisioning events
    PROVISION_STARTED = "provision_started"
    PROVISION_COMPLETE = "provision_complete"
    PROVISION_FAILED = "provision_failed"
    COMPENSATION_SUCCESS = "compensation_success"
    COMPENSATION_FAILED = "compensation_failed"
    TEARDOWN_WARNING = "teardown_warning"

    # Routing events
    ROUTE_REGISTERED = "route_registered"
    ROUTE_DEREGISTERED = "route_deregistered"
    ROUTES_REBUILT = "routes_rebuilt"
    ROUTE_CAS_CONFLICT = "route_cas_conflict"

    # Reconciliation events
    RECONCILE_COMPLETE = "reconcile_complete"
    RECONCILE_FAILED = "reconcile_failed"
    PROBE_SCHEDULED = "probe_scheduled"
    PROBE_CANCELLED = "probe_cancelled"
    PROBE_COMPLETE = "probe_complete"

    # Tenant events
    NAMESPACE_CREATED = "namespace_created"
    NAMESPACE_DELETED = "namespace_deleted"
    GROUP_CREATED = "group_created"
    GROUP_DELETED = "group_deleted"
    MEMBERSHIP_CHANGED = "membership_changed"

    # Cluster adapter events
    CLUSTER_CALL_FAILED = "cluster_call_failed"

    # Record store events
    STORE_CONNECTED = "store_connected"
    STORE_UNAVAILABLE = "store_unavailable"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # API events
    REQUEST_COMPLETE = "request_complete"
    REQUEST_FAILED = "request_failed"
    REQUEST_SLOW = "request_slow"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (network timeout, version conflict)
    PERMANENT = "permanent"  # Not retryable (invalid input, forbidden)
    TIMEOUT = "timeout"


class Component(StrEnum):
    """Component identifiers for log filtering."""

    LC = "lc"  # Lifecycle Controller
    RP = "rp"  # Resource Provisioner
    PX = "px"  # Proxy Synthesizer
    RC = "rc"  # Reconciler
    TM = "tm"  # Tenant Manager
    API = "api"  # REST API
