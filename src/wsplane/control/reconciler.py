"""Reconciler: pulls live cluster state back into workspace records.

Three paths share the same derivation:

- passive (refresh): applied on reads, persists only a status change
- active (sync): forced overwrite of status, image and replicas
- deferred (probe): run by ProbeSupervisor some time after an action
"""

import asyncio
import logging

from wsplane.app.metrics.collector import RECONCILE_TOTAL
from wsplane.control.tenants import quota_of
from wsplane.core.domain import WorkspaceStatus, derive_status
from wsplane.core.domain.naming import workspace_cluster_name
from wsplane.core.domain.resources import usage_snapshot
from wsplane.core.errors import StaleRecordError, WsPlaneError
from wsplane.core.interfaces import ClusterClient, DeploymentInfo, RecordStore
from wsplane.core.logging_schema import Component, LogEvent
from wsplane.core.models import Group, Workspace

logger = logging.getLogger(__name__)


class Reconciler:
    """Derives workspace status from the cluster and persists it."""

    def __init__(self, store: RecordStore, cluster: ClusterClient) -> None:
        self._store = store
        self._cluster = cluster

    async def _observe(
        self, ws: Workspace, group: Group
    ) -> tuple[DeploymentInfo | None, WorkspaceStatus]:
        info = await self._cluster.read_deployment(group.namespace, workspace_cluster_name(ws.id))
        if info is None:
            return None, derive_status(False, 0, 0)
        return info, derive_status(True, info.desired, info.ready, info.failed)

    async def _usage(self, group: Group) -> dict | None:
        try:
            live = await self._cluster.read_namespace_usage(group.namespace)
        except WsPlaneError as exc:
            logger.info(
                "Usage unavailable for %s: %s",
                group.namespace,
                exc,
                extra={"component": Component.RC, "namespace": group.namespace},
            )
            return None
        return usage_snapshot(live.cpu_cores, live.memory_bytes, live.pods, quota_of(group))

    def _failed(self, path: str, ws: Workspace, exc: Exception) -> None:
        RECONCILE_TOTAL.labels(path=path, result="failed").inc()
        logger.warning(
            "Reconcile (%s) failed for %s: %s",
            path,
            ws.id,
            exc,
            extra={
                "event": LogEvent.RECONCILE_FAILED,
                "component": Component.RC,
                "ws_id": ws.id,
                "error_type": type(exc).__name__,
            },
        )

    async def refresh(self, ws: Workspace, group: Group) -> Workspace:
        """Passive reconciliation; returns the persisted record on any failure."""
        try:
            _, status = await self._observe(ws, group)
            if status == ws.status:
                RECONCILE_TOTAL.labels(path="passive", result="unchanged").inc()
                return ws

            changes: dict = {"status": status}
            if status == WorkspaceStatus.RUNNING:
                usage = await self._usage(group)
                if usage is not None:
                    changes["usage"] = usage
            updated = await self._store.update_workspace(
                ws.id, changes, expected_version=ws.version
            )
        except StaleRecordError:
            # Another writer got there first; its record wins
            RECONCILE_TOTAL.labels(path="passive", result="skipped").inc()
            return await self._store.get_workspace(ws.id) or ws
        except WsPlaneError as exc:
            self._failed("passive", ws, exc)
            return ws

        RECONCILE_TOTAL.labels(path="passive", result="changed").inc()
        self._log_change(ws, updated, "passive")
        return updated

    async def sync(self, ws: Workspace, group: Group, path: str = "active") -> Workspace:
        """Overwrite status, image and replicas from the live workload.

        Raises:
            InfrastructureError: Workload status could not be read
        """
        try:
            info, status = await self._observe(ws, group)
        except WsPlaneError as exc:
            self._failed(path, ws, exc)
            raise

        changes: dict = {
            "status": status,
            "replicas": info.desired if info else 0,
            "image": (info.image if info else None) or ws.image,
        }
        if status == WorkspaceStatus.RUNNING:
            usage = await self._usage(group)
            if usage is not None:
                changes["usage"] = usage

        updated = await self._store.update_workspace(ws.id, changes)
        changed = updated.status != ws.status
        RECONCILE_TOTAL.labels(path=path, result="changed" if changed else "unchanged").inc()
        if changed:
            self._log_change(ws, updated, path)
        return updated

    async def probe(self, workspace_id: str) -> Workspace | None:
        """Deferred convergence check. Does nothing for a deleted workspace."""
        ws = await self._store.get_workspace(workspace_id)
        if ws is None:
            RECONCILE_TOTAL.labels(path="probe", result="skipped").inc()
            return None
        group = await self._store.get_group(ws.group_id)
        if group is None:
            RECONCILE_TOTAL.labels(path="probe", result="skipped").inc()
            return None
        return await self.sync(ws, group, path="probe")

    def _log_change(self, before: Workspace, after: Workspace, path: str) -> None:
        logger.info(
            "Workspace %s: %s -> %s",
            after.id,
            before.status,
            after.status,
            extra={
                "event": LogEvent.STATE_CHANGED,
                "component": Component.RC,
                "ws_id": after.id,
                "path": path,
                "from_status": before.status,
                "to_status": after.status,
            },
        )


class ProbeSupervisor:
    """Owns at most one pending convergence probe per workspace id."""

    def __init__(self, reconciler: Reconciler, delay: float) -> None:
        self._reconciler = reconciler
        self._delay = delay
        self._tasks: dict[str, asyncio.Task] = {}

    def pending(self) -> list[str]:
        return sorted(self._tasks)

    def schedule(self, workspace_id: str, delay: float | None = None) -> asyncio.Task:
        """Schedule a probe, replacing any in-flight probe for the same id."""
        self.cancel(workspace_id)
        task = asyncio.create_task(
            self._run(workspace_id, self._delay if delay is None else delay),
            name=f"probe-{workspace_id}",
        )
        self._tasks[workspace_id] = task
        task.add_done_callback(lambda t: self._forget(workspace_id, t))
        logger.debug(
            "Probe scheduled for %s",
            workspace_id,
            extra={
                "event": LogEvent.PROBE_SCHEDULED,
                "component": Component.RC,
                "ws_id": workspace_id,
            },
        )
        return task

    def cancel(self, workspace_id: str) -> bool:
        task = self._tasks.pop(workspace_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(
            "Probe cancelled for %s",
            workspace_id,
            extra={
                "event": LogEvent.PROBE_CANCELLED,
                "component": Component.RC,
                "ws_id": workspace_id,
            },
        )
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, workspace_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workspace_id) is task:
            del self._tasks[workspace_id]

    async def _run(self, workspace_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            ws = await self._reconciler.probe(workspace_id)
        except Exception as exc:
            logger.warning(
                "Probe for %s failed: %s",
                workspace_id,
                exc,
                extra={
                    "event": LogEvent.RECONCILE_FAILED,
                    "component": Component.RC,
                    "ws_id": workspace_id,
                    "error_type": type(exc).__name__,
                },
            )
            return
        logger.info(
            "Probe complete for %s",
            workspace_id,
            extra={
                "event": LogEvent.PROBE_COMPLETE,
                "component": Component.RC,
                "ws_id": workspace_id,
                "status": ws.status if ws else None,
            },
        )
