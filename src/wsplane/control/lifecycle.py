"""Lifecycle Controller.

Top-level workspace state machine. Sequences the Tenant Manager, Resource
Provisioner, Proxy Synthesizer and Reconciler around the persisted record:

    create  -> record STOPPED/0 -> provision (rollback on failure)
    action  -> plan_action -> versioned update -> scale -> deferred probe
    delete  -> cancel probe -> teardown -> record delete -> release route
"""

import logging
import secrets
from dataclasses import dataclass, field

from wsplane.app.config import ProbeConfig, RuntimeConfig
from wsplane.app.metrics.collector import WORKSPACE_ACTIONS_TOTAL
from wsplane.control.locks import KeyedLock
from wsplane.control.provisioner import ProvisionRequest, ResourceProvisioner
from wsplane.control.reconciler import ProbeSupervisor, Reconciler
from wsplane.control.tenants import TenantManager, quota_of
from wsplane.core.domain import (
    ActionType,
    Caller,
    GroupRole,
    ResourceSpec,
    WorkspaceStatus,
    plan_action,
    resolve_resources,
)
from wsplane.core.domain.naming import (
    new_workspace_id,
    secret_name,
    volume_claim_name,
    workspace_cluster_name,
)
from wsplane.core.domain.resources import usage_snapshot
from wsplane.core.domain.workspace import parse_action
from wsplane.core.errors import (
    ConflictError,
    ForbiddenError,
    InfrastructureError,
    NotFoundError,
    StaleRecordError,
    ValidationError,
    WsPlaneError,
)
from wsplane.core.interfaces import ClusterClient, Page, RecordStore
from wsplane.core.logging_schema import Component, LogEvent
from wsplane.core.models import Group, Workspace, utc_now

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SETTING = "default_workspace_image"
CREDENTIAL_BYTES = 24
LOG_LINES_DEFAULT = 100
LOG_LINES_MAX = 1000


@dataclass
class CreateWorkspaceRequest:
    group_id: str
    name: str
    description: str | None = None
    image: str | None = None
    tier: str | None = None
    resources: ResourceSpec | None = None


@dataclass
class DeleteOutcome:
    """Result of a delete: record outcome and cluster warnings, reported apart."""

    workspace_id: str
    record_deleted: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class ComponentHealth:
    name: str
    healthy: bool
    detail: str


class LifecycleController:
    """Workspace lifecycle operations for one authenticated caller."""

    def __init__(
        self,
        store: RecordStore,
        cluster: ClusterClient,
        tenants: TenantManager,
        provisioner: ResourceProvisioner,
        reconciler: Reconciler,
        probes: ProbeSupervisor,
        runtime_cfg: RuntimeConfig,
        probe_cfg: ProbeConfig,
    ) -> None:
        self._store = store
        self._cluster = cluster
        self._tenants = tenants
        self._provisioner = provisioner
        self._reconciler = reconciler
        self._probes = probes
        self._runtime = runtime_cfg
        self._probe_cfg = probe_cfg
        self._locks = KeyedLock()

    # =========================================================================
    # Access
    # =========================================================================

    async def _load(self, workspace_id: str) -> tuple[Workspace, Group]:
        ws = await self._store.get_workspace(workspace_id)
        if ws is None:
            raise NotFoundError("Workspace not found")
        group = await self._tenants.require_group(ws.group_id)
        return ws, group

    async def _readable(self, caller: Caller, workspace_id: str) -> tuple[Workspace, Group]:
        """Owner, group member or platform admin; others get NotFound."""
        ws, group = await self._load(workspace_id)
        if (
            caller.is_platform_admin
            or ws.owner_user_id == caller.user_id
            or await self._tenants.role_in(caller.user_id, ws.group_id) is not None
        ):
            return ws, group
        raise NotFoundError("Workspace not found")

    async def _manageable(self, caller: Caller, workspace_id: str) -> tuple[Workspace, Group]:
        """Owner, group admin or platform admin."""
        ws, group = await self._readable(caller, workspace_id)
        if caller.is_platform_admin or ws.owner_user_id == caller.user_id:
            return ws, group
        if await self._tenants.role_in(caller.user_id, ws.group_id) != GroupRole.ADMIN:
            raise ForbiddenError("Not allowed to manage this workspace")
        return ws, group

    # =========================================================================
    # Create
    # =========================================================================

    async def default_image(self) -> str:
        """Image for workspaces created without one: platform setting, else config."""
        return await self._store.get_setting(DEFAULT_IMAGE_SETTING) or self._runtime.default_image

    async def set_default_image(self, caller: Caller, image: str) -> str:
        """Replace the platform-wide default image. Existing workspaces keep theirs.

        Raises:
            ForbiddenError: Caller is not a platform admin
            ValidationError: Blank or malformed image reference
        """
        if not caller.is_platform_admin:
            raise ForbiddenError("Platform admin role required")
        image = image.strip()
        if not image or any(ch.isspace() for ch in image):
            raise ValidationError(f"Invalid image reference: {image!r}")

        await self._store.put_setting(DEFAULT_IMAGE_SETTING, image)
        logger.info(
            "Default workspace image set to %s",
            image,
            extra={
                "event": LogEvent.SETTING_CHANGED,
                "component": Component.LC,
                "setting": DEFAULT_IMAGE_SETTING,
                "user_id": caller.user_id,
            },
        )
        return image

    async def _resolve_image(self, explicit: str | None) -> str:
        return explicit or await self.default_image()

    async def create(self, caller: Caller, request: CreateWorkspaceRequest) -> Workspace:
        """Create a workspace record and provision its cluster objects.

        The record exists only if provisioning succeeded.

        Raises:
            NotFoundError: Group absent or not visible to caller
            ValidationError: Unknown tier
            InfrastructureError: Provisioning failed (rolled back)
        """
        resources = resolve_resources(request.resources, request.tier, self._runtime.default_tier)
        image = await self._resolve_image(request.image)
        workspace_id = new_workspace_id()
        name = workspace_cluster_name(workspace_id)

        # Group deletion counts workspaces under the same lock, so once the
        # record is in, the group and its namespace stay until it is gone.
        async with self._tenants.group_guard(request.group_id):
            group = await self._tenants.require_group(request.group_id)
            if not caller.is_platform_admin and await self._tenants.role_in(
                caller.user_id, group.id
            ) is None:
                raise NotFoundError("Group not found")

            ws = await self._store.create_workspace(
                Workspace(
                    id=workspace_id,
                    owner_user_id=caller.user_id,
                    group_id=group.id,
                    name=request.name,
                    description=request.description,
                    status=WorkspaceStatus.STOPPED,
                    image=image,
                    resources=resources.model_dump(),
                    replicas=0,
                    credential=secrets.token_urlsafe(CREDENTIAL_BYTES),
                    url=f"{self._runtime.url_scheme}://{self._runtime.base_domain}/{name}/",
                )
            )

        try:
            await self._provisioner.create(
                group,
                ProvisionRequest(
                    workspace_id=ws.id,
                    name=name,
                    image=image,
                    resources=resources,
                    credential=ws.credential,
                ),
            )
        except Exception:
            await self._store.delete_workspace(ws.id)
            raise

        logger.info(
            "Workspace %s created",
            ws.id,
            extra={
                "event": LogEvent.WORKSPACE_CREATED,
                "component": Component.LC,
                "ws_id": ws.id,
                "group_id": group.id,
                "user_id": caller.user_id,
            },
        )
        return ws

    # =========================================================================
    # Actions
    # =========================================================================

    async def action(self, caller: Caller, workspace_id: str, action: str) -> Workspace:
        """Perform start / stop / restart.

        Raises:
            ValidationError: Unknown action type
            ConflictError: Transition not allowed, or concurrent modification
            InfrastructureError: Scale failed (record moved to ERROR)
        """
        action_type = parse_action(action)
        async with self._locks.hold(workspace_id):
            ws, group = await self._manageable(caller, workspace_id)
            try:
                transition = plan_action(ws.status, action_type)
            except ConflictError:
                WORKSPACE_ACTIONS_TOTAL.labels(action=action_type, result="conflict").inc()
                raise

            try:
                ws = await self._store.update_workspace(
                    ws.id,
                    {
                        "status": transition.target,
                        "replicas": transition.replicas,
                        "last_accessed_at": utc_now(),
                    },
                    expected_version=ws.version,
                )
            except StaleRecordError:
                WORKSPACE_ACTIONS_TOTAL.labels(action=action_type, result="conflict").inc()
                raise ConflictError("Workspace was modified concurrently, retry") from None

            try:
                await self._provisioner.scale(
                    group.namespace, workspace_cluster_name(ws.id), transition.replicas
                )
            except WsPlaneError as exc:
                WORKSPACE_ACTIONS_TOTAL.labels(action=action_type, result="failure").inc()
                await self._store.update_workspace(ws.id, {"status": WorkspaceStatus.ERROR})
                logger.error(
                    "Scale failed for %s: %s",
                    ws.id,
                    exc,
                    extra={
                        "event": LogEvent.ACTION_PERFORMED,
                        "component": Component.LC,
                        "ws_id": ws.id,
                        "action": action_type,
                        "error_type": type(exc).__name__,
                    },
                )
                raise InfrastructureError(f"Failed to scale workspace: {exc.message}") from exc

            self._probes.schedule(ws.id, self._probe_cfg.delay)

        WORKSPACE_ACTIONS_TOTAL.labels(action=action_type, result="success").inc()
        logger.info(
            "Workspace %s: %s",
            ws.id,
            action_type,
            extra={
                "event": LogEvent.ACTION_PERFORMED,
                "component": Component.LC,
                "ws_id": ws.id,
                "action": action_type,
                "status": ws.status,
                "user_id": caller.user_id,
            },
        )
        return ws

    async def start(self, caller: Caller, workspace_id: str) -> Workspace:
        return await self.action(caller, workspace_id, ActionType.START)

    async def stop(self, caller: Caller, workspace_id: str) -> Workspace:
        return await self.action(caller, workspace_id, ActionType.STOP)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, caller: Caller, workspace_id: str) -> DeleteOutcome:
        """Tear down cluster objects, remove the record, release the route.

        Cluster failures never block record removal; they come back as
        warnings.
        """
        async with self._locks.hold(workspace_id):
            ws, group = await self._manageable(caller, workspace_id)
            self._probes.cancel(ws.id)

            name = workspace_cluster_name(ws.id)
            warnings = await self._provisioner.teardown(group.namespace, name)
            deleted = await self._store.delete_workspace(ws.id)
            warnings += await self._provisioner.release_route(group.namespace, name)

        logger.info(
            "Workspace %s deleted (%d warning(s))",
            ws.id,
            len(warnings),
            extra={
                "event": LogEvent.WORKSPACE_DELETED,
                "component": Component.LC,
                "ws_id": ws.id,
                "group_id": group.id,
                "user_id": caller.user_id,
                "warnings": len(warnings),
            },
        )
        return DeleteOutcome(workspace_id=ws.id, record_deleted=deleted, warnings=warnings)

    # =========================================================================
    # Reads and reconciliation
    # =========================================================================

    async def sync(self, caller: Caller, workspace_id: str) -> Workspace:
        ws, group = await self._manageable(caller, workspace_id)
        return await self._reconciler.sync(ws, group)

    async def get(self, caller: Caller, workspace_id: str) -> Workspace:
        ws, group = await self._readable(caller, workspace_id)
        return await self._reconciler.refresh(ws, group)

    async def list_workspaces(
        self,
        caller: Caller,
        group_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[Workspace]:
        """List visible workspaces, newest first, refreshing the returned page."""
        if status is not None:
            try:
                status = WorkspaceStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid status: {status!r}") from None

        if caller.is_platform_admin:
            group_ids = [group_id] if group_id else None
            owner = None
        else:
            group_ids = await self._tenants.group_ids_for_user(caller.user_id)
            owner = caller.user_id
            if group_id:
                group_ids = [g for g in group_ids if g == group_id]
                owner = None
                if not group_ids:
                    return Page(items=[], total=0, limit=limit, offset=offset)

        page = await self._store.list_workspaces(
            group_ids=group_ids, owner_user_id=owner, status=status, limit=limit, offset=offset
        )

        groups: dict[str, Group | None] = {}
        items: list[Workspace] = []
        for ws in page.items:
            if ws.group_id not in groups:
                groups[ws.group_id] = await self._store.get_group(ws.group_id)
            group = groups[ws.group_id]
            items.append(await self._reconciler.refresh(ws, group) if group else ws)
        return Page(items=items, total=page.total, limit=page.limit, offset=page.offset)

    async def update(
        self,
        caller: Caller,
        workspace_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Workspace:
        ws, _ = await self._manageable(caller, workspace_id)
        changes = {
            key: value
            for key, value in (("name", name), ("description", description))
            if value is not None
        }
        if not changes:
            return ws
        try:
            return await self._store.update_workspace(
                ws.id, changes, expected_version=ws.version
            )
        except StaleRecordError:
            raise ConflictError("Workspace was modified concurrently, retry") from None

    async def metrics(self, caller: Caller, workspace_id: str) -> dict:
        """Live usage of the workspace's namespace against the group quota."""
        _, group = await self._readable(caller, workspace_id)
        live = await self._cluster.read_namespace_usage(group.namespace)
        return usage_snapshot(live.cpu_cores, live.memory_bytes, live.pods, quota_of(group))

    async def logs(
        self, caller: Caller, workspace_id: str, lines: int = LOG_LINES_DEFAULT
    ) -> str:
        """Tail of the first workload pod's log.

        Raises:
            ValidationError: lines outside 1..1000
            NotFoundError: No pods for the workspace
        """
        if not 1 <= lines <= LOG_LINES_MAX:
            raise ValidationError(f"lines must be between 1 and {LOG_LINES_MAX}")
        ws, group = await self._readable(caller, workspace_id)
        pods = await self._cluster.list_pods(
            group.namespace, f"app={workspace_cluster_name(ws.id)}"
        )
        if not pods:
            raise NotFoundError("No pods found for workspace")
        return await self._cluster.read_pod_log(group.namespace, pods[0].name, lines)

    async def health(self, caller: Caller, workspace_id: str) -> list[ComponentHealth]:
        """Per-object health report for the workspace's cluster objects."""
        ws, group = await self._readable(caller, workspace_id)
        namespace = group.namespace
        name = workspace_cluster_name(ws.id)

        report: list[ComponentHealth] = []
        info = await self._cluster.read_deployment(namespace, name)
        if info is None:
            report.append(ComponentHealth("Deployment", False, "Deployment not found"))
        elif info.failed:
            report.append(
                ComponentHealth("Deployment", False, info.failure_message or "Deployment failed")
            )
        else:
            report.append(
                ComponentHealth(
                    "Deployment",
                    info.ready >= info.desired,
                    f"{info.ready}/{info.desired} replicas ready",
                )
            )

        service = await self._cluster.service_exists(namespace, name)
        report.append(
            ComponentHealth(
                "Service", service, "Service exists" if service else "Service not found"
            )
        )
        secret = await self._cluster.secret_exists(namespace, secret_name(name))
        report.append(
            ComponentHealth("Secret", secret, "Secret exists" if secret else "Secret not found")
        )
        claim = await self._cluster.volume_claim_exists(namespace, volume_claim_name(name))
        report.append(
            ComponentHealth(
                "Volume", claim, "Volume claim exists" if claim else "Volume claim not found"
            )
        )

        pods = await self._cluster.list_pods(namespace, f"app={name}")
        if not pods:
            healthy = info is not None and info.desired == 0
            report.append(ComponentHealth("Pods", healthy, "No pods running"))
        else:
            ready = sum(1 for pod in pods if pod.ready)
            report.append(
                ComponentHealth("Pods", ready == len(pods), f"{ready}/{len(pods)} pods ready")
            )
        return report
