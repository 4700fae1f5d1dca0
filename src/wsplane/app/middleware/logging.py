"""Per-request trace id, access log line and HTTP metrics."""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from wsplane.app.config import get_settings
from wsplane.app.logging import clear_trace_context, set_trace_id
from wsplane.app.metrics.collector import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL
from wsplane.core.logging_schema import Component, LogEvent

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"

# Probes and scrapes are not access-logged
_UNLOGGED_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/metrics"})

_ID_SEGMENTS = (
    (re.compile(r"/workspaces/ws_[0-9A-Za-z]+"), "/workspaces/{id}"),
    (re.compile(r"/groups/grp_[0-9A-Za-z]+"), "/groups/{id}"),
    (re.compile(r"/members/[^/]+$"), "/members/{user_id}"),
)

_ROUTE_TEMPLATES = frozenset(
    [
        "/api/v1/workspaces",
        "/api/v1/groups",
        "/api/v1/groups/{id}",
        "/api/v1/groups/{id}/members",
        "/api/v1/groups/{id}/members/{user_id}",
        "/api/v1/settings/default-image",
        "/api/v1/workspaces/{id}",
    ]
    + [
        f"/api/v1/workspaces/{{id}}/{leaf}"
        for leaf in ("actions", "sync", "metrics", "logs", "health")
    ]
)


def route_label(path: str) -> str:
    """Metric label for a request path; ids are folded, strays become "other"."""
    for pattern, template in _ID_SEGMENTS:
        path = pattern.sub(template, path)
    return path if path in _ROUTE_TEMPLATES else "other"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds a trace id for the request and records its outcome.

    The id comes from the incoming X-Trace-ID header when present and is
    echoed on the response either way.
    """

    def __init__(self, app, slow_threshold_ms: float | None = None) -> None:
        super().__init__(app)
        if slow_threshold_ms is None:
            slow_threshold_ms = get_settings().logging.slow_threshold_ms
        self.slow_threshold_ms = slow_threshold_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = set_trace_id(request.headers.get(TRACE_HEADER))
        fields = {
            "component": Component.API,
            "method": request.method,
            "path": request.url.path,
            "trace_id": trace_id,
        }
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = (time.perf_counter() - started) * 1000
            logger.exception("Unhandled error", extra={"event": LogEvent.REQUEST_FAILED, **fields})
            raise
        finally:
            clear_trace_context()

        elapsed = time.perf_counter() - started
        if request.url.path not in _UNLOGGED_PATHS:
            self._record(request.method, request.url.path, response.status_code, elapsed, fields)

        response.headers[TRACE_HEADER] = trace_id
        return response

    def _record(self, method: str, path: str, status: int, elapsed: float, fields: dict) -> None:
        label = route_label(path)
        HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=label, status=str(status)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, endpoint=label).observe(elapsed)

        fields.update(status=status, duration_ms=round(elapsed * 1000, 2))
        logger.info(
            "%s %s -> %d", method, path, status,
            extra={"event": LogEvent.REQUEST_COMPLETE, **fields},
        )
        if fields["duration_ms"] > self.slow_threshold_ms:
            logger.warning(
                "Slow request: %s %s",
                method,
                path,
                extra={
                    "event": LogEvent.REQUEST_SLOW,
                    "threshold_ms": self.slow_threshold_ms,
                    **fields,
                },
            )
