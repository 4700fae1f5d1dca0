"""Transient-failure classification and jittered exponential backoff.

Two callers lean on this: the route-map compare-and-swap loop (retries on
VersionConflictError only) and ResourceQuota creation, which retries
whatever classify_error calls retryable, notably the 404 seen while a new
namespace is not yet visible to admission.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

from kubernetes.client.exceptions import ApiException

from wsplane.core.errors import InfrastructureError, VersionConflictError, WsPlaneError
from wsplane.core.logging_schema import ErrorClass

logger = logging.getLogger(__name__)

T = TypeVar("T")
Verdict = Literal["retryable", "permanent", "unknown"]

# 404 covers a namespace that is not visible yet, 409 a lost write race
API_RETRYABLE_STATUS = frozenset({404, 409, 429, 500, 502, 503, 504})


def is_api_retryable(exc: ApiException) -> bool:
    return exc.status in API_RETRYABLE_STATUS


def _api_verdict(exc: ApiException) -> Verdict:
    return "retryable" if is_api_retryable(exc) else "permanent"


def classify_error(exc: Exception) -> Verdict:
    """Sort an error into retryable, permanent or unknown.

    InfrastructureError is judged by the ApiException it wraps; one with no
    API cause is unknown. Any other WsPlaneError is a caller mistake or a
    state conflict and is permanent.
    """
    match exc:
        case asyncio.TimeoutError() | VersionConflictError():
            return "retryable"
        case InfrastructureError(cause=ApiException() as cause):
            return _api_verdict(cause)
        case InfrastructureError():
            return "unknown"
        case WsPlaneError():
            return "permanent"
        case ApiException():
            return _api_verdict(exc)
    return "unknown"


def is_retryable(exc: Exception) -> bool:
    return classify_error(exc) == "retryable"


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Capped exponential delay for a zero-based attempt, jittered to 50-150%."""
    ceiling = min(base_delay * 2**attempt, max_delay)
    return ceiling * (0.5 + random.random())


async def with_retry(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Callable[[Exception], bool] = is_retryable,
) -> T:
    """Await coro_factory() until it succeeds or retries run out.

    coro_factory is called once per attempt, so it must build a fresh
    awaitable each time. Errors rejected by retry_on propagate at once;
    after max_retries retries the last error propagates.
    """
    attempts = max_retries + 1
    attempt = 0
    while True:
        try:
            return await coro_factory()
        except Exception as exc:
            if not retry_on(exc):
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error(
                    "Giving up after %d attempts: %s",
                    attempts,
                    exc,
                    extra={"error_class": ErrorClass.TRANSIENT, "attempt": attempt},
                )
                raise
            delay = backoff_delay(attempt - 1, base_delay, max_delay)
            logger.warning(
                "Attempt %d/%d failed, retrying in %.2fs: %s",
                attempt,
                attempts,
                delay,
                exc,
                extra={"error_class": ErrorClass.TRANSIENT, "attempt": attempt, "delay": delay},
            )
            await asyncio.sleep(delay)
