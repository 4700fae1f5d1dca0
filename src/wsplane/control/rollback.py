"""Ordered steps with compensating actions.

A provisioning run is a list of Step(action, compensate). On failure the
runner compensates every completed step and the failed step itself, newest
first, then re-raises the original error. Compensation failures are logged
and never retried.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from wsplane.app.metrics.collector import COMPENSATION_TOTAL
from wsplane.core.logging_schema import Component, ErrorClass, LogEvent

logger = logging.getLogger(__name__)


@dataclass
class Step:
    """One provisioning step.

    Attributes:
        name: Step name used in logs and metrics
        action: Coroutine factory performing the step
        compensate: Coroutine factory undoing it (None: nothing to undo)
    """

    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Callable[[], Awaitable[Any]] | None = None


class RollbackRunner:
    """Run steps in order, compensating in reverse on failure."""

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        self._context = context or {}

    async def run(self, steps: Iterable[Step]) -> None:
        attempted: list[Step] = []
        for step in steps:
            # The failed step may have partially created its object
            attempted.append(step)
            try:
                await step.action()
            except Exception as exc:
                logger.error(
                    "Step %s failed, rolling back %d step(s)",
                    step.name,
                    len(attempted),
                    extra={
                        **self._context,
                        "event": LogEvent.PROVISION_FAILED,
                        "component": Component.RP,
                        "step": step.name,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                await self.compensate(reversed(attempted))
                raise

    async def compensate(self, steps: Iterable[Step]) -> list[str]:
        """Run compensations independently; return names of those that failed."""
        failed: list[str] = []
        for step in steps:
            if step.compensate is None:
                continue
            try:
                await step.compensate()
            except Exception as exc:
                failed.append(step.name)
                COMPENSATION_TOTAL.labels(step=step.name, result="failure").inc()
                logger.error(
                    "Compensation for %s failed: %s",
                    step.name,
                    exc,
                    extra={
                        **self._context,
                        "event": LogEvent.COMPENSATION_FAILED,
                        "component": Component.RP,
                        "step": step.name,
                        "error_class": ErrorClass.PERMANENT,
                        "error_type": type(exc).__name__,
                    },
                )
                continue
            COMPENSATION_TOTAL.labels(step=step.name, result="success").inc()
            logger.info(
                "Compensated %s",
                step.name,
                extra={
                    **self._context,
                    "event": LogEvent.COMPENSATION_SUCCESS,
                    "component": Component.RP,
                    "step": step.name,
                },
            )
        return failed
