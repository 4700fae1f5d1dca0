"""Structured JSON logging for the control plane.

Every record carries service, schema_version and, while a request is being
served, the trace id set by LoggingMiddleware. Repeated non-error lines are
throttled per call site so a flapping probe cannot flood the output.
"""

import logging
import sys
import time
from collections import deque
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pythonjsonlogger.json import JsonFormatter

from wsplane.app.config import get_settings

_trace_id: ContextVar[str | None] = ContextVar("wsplane_trace_id", default=None)

_WINDOW_SECONDS = 60.0

# Libraries that log every HTTP round trip at DEBUG/INFO
_NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore", "asyncio")


def get_trace_id() -> str | None:
    return _trace_id.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Bind a trace id to the current context; a fresh uuid4 when none given."""
    value = trace_id or uuid4().hex
    _trace_id.set(value)
    return value


def clear_trace_context() -> None:
    _trace_id.set(None)


class RateLimitFilter(logging.Filter):
    """Throttle identical log lines to rate_per_minute per call site.

    ERROR and above are never throttled. When a call site first crosses the
    limit one record is let through with a "[RATE LIMITED]" prefix; the rest
    of the burst is dropped until the site falls back below half the limit.
    """

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._seen: dict[tuple[str, int, str], deque[float]] = {}
        self._throttled: set[tuple[str, int, str]] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        site = (record.name, record.lineno, str(record.msg))
        now = time.monotonic()
        stamps = self._seen.setdefault(site, deque())
        while stamps and now - stamps[0] >= _WINDOW_SECONDS:
            stamps.popleft()

        if len(stamps) < self.rate_per_minute:
            if len(stamps) < self.rate_per_minute // 2:
                self._throttled.discard(site)
            stamps.append(now)
            return True

        if site in self._throttled:
            return False
        self._throttled.add(site)
        stamps.append(now)
        record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
        return True


class ServiceJsonFormatter(JsonFormatter):
    """One JSON object per line with the control plane's standard fields."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        log_settings = get_settings().logging
        self._static = {
            "service": log_settings.service_name,
            "schema_version": log_settings.schema_version,
        }

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
            lineno=record.lineno,
            **self._static,
        )
        trace_id = get_trace_id()
        if trace_id:
            log_record.setdefault("trace_id", trace_id)
        if record.exc_info and "exception" not in log_record:
            log_record["exception"] = self.formatException(record.exc_info)
        log_record.pop("color_message", None)


def _attach(logger_name: str, handler: logging.Handler) -> None:
    target = logging.getLogger(logger_name)
    target.handlers = [handler]
    target.propagate = False


def setup_logging(level: int | None = None) -> None:
    """Route the root and uvicorn loggers through one JSON stdout handler.

    Args:
        level: Log level. Defaults to WSPLANE_LOGGING__LEVEL.
    """
    log_settings = get_settings().logging
    if level is None:
        level = logging.getLevelName(log_settings.level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ServiceJsonFormatter())
    handler.addFilter(RateLimitFilter(log_settings.rate_limit_per_minute))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    _attach("uvicorn", handler)
    _attach("uvicorn.error", handler)
    # request lines come from LoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
