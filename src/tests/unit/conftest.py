"""Shared fixtures: in-memory cluster and record store doubles.

FakeCluster and FakeRecordStore implement the full ClusterClient /
RecordStore contracts in memory so engine scenarios run without a cluster
or database. Faults are injected per operation name via ``fail``.
"""

from collections.abc import Callable
from dataclasses import replace
from typing import Any

import pytest

from wsplane.app.config import ProbeConfig, ProxyConfig, Settings
from wsplane.control import ControlPlane, build_control_plane
from wsplane.core.domain import Caller, GroupRole
from wsplane.core.errors import (
    InfrastructureError,
    NotFoundError,
    RecordExistsError,
    StaleRecordError,
    VersionConflictError,
)
from wsplane.core.interfaces import (
    ClusterClient,
    ConfigMapInfo,
    DeploymentInfo,
    DeploymentSpec,
    NamespaceUsage,
    Page,
    PodInfo,
    RecordStore,
    ServiceSpec,
    VolumeClaimSpec,
)
from wsplane.core.models import Group, Membership, User, Workspace, utc_now


def _copy(record: Any) -> Any:
    return type(record)(**record.model_dump())


# =============================================================================
# Cluster
# =============================================================================


class FakeCluster(ClusterClient):
    """In-memory ClusterClient.

    Attributes:
        fail: operation name -> exception raised on the next call(s)
        ready: (namespace, name) -> ready replica count reported
        calls: ordered log of (operation, key) for mutating calls
        on_replace: hook run before a config map replace (simulates a
            concurrent writer)
    """

    def __init__(self) -> None:
        self.namespaces: dict[str, dict[str, str]] = {}
        self.quotas: dict[tuple[str, str], dict[str, str]] = {}
        self.deployments: dict[tuple[str, str], DeploymentSpec] = {}
        self.services: dict[tuple[str, str], ServiceSpec] = {}
        self.secrets: dict[tuple[str, str], dict[str, str]] = {}
        self.volume_claims: dict[tuple[str, str], VolumeClaimSpec] = {}
        self.config_maps: dict[tuple[str, str], ConfigMapInfo] = {}
        self.ingress_routes: dict[tuple[str, str], dict] = {}
        self.pods: dict[str, list[PodInfo]] = {}
        self.pod_logs: dict[str, str] = {}
        self.ready: dict[tuple[str, str], int] = {}
        self.failed: set[tuple[str, str]] = set()
        self.usage = NamespaceUsage(cpu_cores=0.5, memory_bytes=1024**3, pods=1)
        self.fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self.on_replace: Callable[[str, str], None] | None = None
        self._rv = 0

    def _check(self, op: str) -> None:
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    async def ping(self) -> None:
        self._check("ping")

    # Namespaces and quota

    async def namespace_exists(self, name: str) -> bool:
        return name in self.namespaces

    async def create_namespace(self, name: str, labels: dict[str, str]) -> bool:
        self._check("create_namespace")
        if name in self.namespaces:
            return False
        self.namespaces[name] = dict(labels)
        self.calls.append(("create_namespace", name))
        return True

    async def delete_namespace(self, name: str) -> None:
        self._check("delete_namespace")
        self.calls.append(("delete_namespace", name))
        if self.namespaces.pop(name, None) is None:
            return
        for store in (
            self.quotas,
            self.deployments,
            self.services,
            self.secrets,
            self.volume_claims,
            self.config_maps,
            self.ingress_routes,
        ):
            for key in [k for k in store if k[0] == name]:
                del store[key]

    async def create_resource_quota(self, namespace: str, name: str, hard: dict[str, str]) -> bool:
        self._check("create_resource_quota")
        if (namespace, name) in self.quotas:
            return False
        self.quotas[(namespace, name)] = dict(hard)
        return True

    async def replace_resource_quota(
        self, namespace: str, name: str, hard: dict[str, str]
    ) -> None:
        self._check("replace_resource_quota")
        self.quotas[(namespace, name)] = dict(hard)

    # Workloads

    async def create_deployment(self, spec: DeploymentSpec) -> bool:
        self._check("create_deployment")
        key = (spec.namespace, spec.name)
        if key in self.deployments:
            return False
        self.deployments[key] = replace(spec, pod_annotations=dict(spec.pod_annotations))
        self.calls.append(("create_deployment", key))
        return True

    async def read_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        self._check("read_deployment")
        spec = self.deployments.get((namespace, name))
        if spec is None:
            return None
        return DeploymentInfo(
            name=name,
            desired=spec.replicas,
            ready=min(self.ready.get((namespace, name), 0), spec.replicas),
            image=spec.image,
            failed=(namespace, name) in self.failed,
            pod_annotations=dict(spec.pod_annotations),
        )

    async def scale_deployment(self, namespace: str, name: str, replicas: int) -> None:
        self._check("scale_deployment")
        spec = self.deployments.get((namespace, name))
        if spec is None:
            raise InfrastructureError(f"Failed to scale {namespace}/{name}: Not Found")
        spec.replicas = replicas
        self.calls.append(("scale_deployment", (namespace, name, replicas)))

    async def patch_pod_annotations(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> None:
        self._check("patch_pod_annotations")
        self.deployments[(namespace, name)].pod_annotations.update(annotations)

    async def delete_deployment(self, namespace: str, name: str) -> None:
        self._check("delete_deployment")
        self.calls.append(("delete_deployment", (namespace, name)))
        self.deployments.pop((namespace, name), None)

    async def create_service(self, spec: ServiceSpec) -> bool:
        self._check("create_service")
        key = (spec.namespace, spec.name)
        if key in self.services:
            return False
        self.services[key] = spec
        self.calls.append(("create_service", key))
        return True

    async def service_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.services

    async def delete_service(self, namespace: str, name: str) -> None:
        self._check("delete_service")
        self.calls.append(("delete_service", (namespace, name)))
        self.services.pop((namespace, name), None)

    async def create_secret(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool:
        self._check("create_secret")
        if (namespace, name) in self.secrets:
            return False
        self.secrets[(namespace, name)] = dict(data)
        self.calls.append(("create_secret", (namespace, name)))
        return True

    async def secret_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.secrets

    async def delete_secret(self, namespace: str, name: str) -> None:
        self._check("delete_secret")
        self.calls.append(("delete_secret", (namespace, name)))
        self.secrets.pop((namespace, name), None)

    # Volume claims

    async def create_volume_claim(self, spec: VolumeClaimSpec) -> bool:
        self._check("create_volume_claim")
        key = (spec.namespace, spec.name)
        if key in self.volume_claims:
            return False
        self.volume_claims[key] = spec
        self.calls.append(("create_volume_claim", key))
        return True

    async def volume_claim_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.volume_claims

    async def delete_volume_claim(self, namespace: str, name: str) -> None:
        self._check("delete_volume_claim")
        self.calls.append(("delete_volume_claim", (namespace, name)))
        self.volume_claims.pop((namespace, name), None)

    # Config maps

    async def read_config_map(self, namespace: str, name: str) -> ConfigMapInfo | None:
        self._check("read_config_map")
        current = self.config_maps.get((namespace, name))
        if current is None:
            return None
        return ConfigMapInfo(current.name, dict(current.data), current.resource_version)

    async def create_config_map(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool:
        self._check("create_config_map")
        if (namespace, name) in self.config_maps:
            return False
        self.config_maps[(namespace, name)] = ConfigMapInfo(name, dict(data), self._next_rv())
        self.calls.append(("create_config_map", (namespace, name)))
        return True

    async def replace_config_map(
        self, namespace: str, name: str, data: dict[str, str], resource_version: str
    ) -> ConfigMapInfo:
        self._check("replace_config_map")
        if self.on_replace is not None:
            self.on_replace(namespace, name)
        current = self.config_maps.get((namespace, name))
        if current is None:
            raise InfrastructureError(f"Failed to replace {namespace}/{name}: Not Found")
        if current.resource_version != resource_version:
            raise VersionConflictError(f"{name} changed since {resource_version}")
        updated = ConfigMapInfo(name, dict(data), self._next_rv())
        self.config_maps[(namespace, name)] = updated
        return updated

    async def delete_config_map(self, namespace: str, name: str) -> None:
        self._check("delete_config_map")
        self.calls.append(("delete_config_map", (namespace, name)))
        self.config_maps.pop((namespace, name), None)

    # Aggregate route

    async def apply_ingress_route(self, namespace: str, name: str, body: dict) -> None:
        self._check("apply_ingress_route")
        self.ingress_routes[(namespace, name)] = body

    async def delete_ingress_route(self, namespace: str, name: str) -> None:
        self._check("delete_ingress_route")
        self.calls.append(("delete_ingress_route", (namespace, name)))
        self.ingress_routes.pop((namespace, name), None)

    # Observation

    async def list_pods(self, namespace: str, label_selector: str) -> list[PodInfo]:
        self._check("list_pods")
        app = label_selector.removeprefix("app=")
        return [pod for pod in self.pods.get(namespace, []) if pod.name.startswith(app)]

    async def read_pod_log(self, namespace: str, pod: str, tail_lines: int) -> str:
        self._check("read_pod_log")
        lines = self.pod_logs.get(pod, "").splitlines()
        return "\n".join(lines[-tail_lines:])

    async def read_namespace_usage(self, namespace: str) -> NamespaceUsage:
        self._check("read_namespace_usage")
        return self.usage


# =============================================================================
# Record store
# =============================================================================


class FakeRecordStore(RecordStore):
    """In-memory RecordStore with the same conditional/versioned semantics."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.groups: dict[str, Group] = {}
        self.memberships: dict[tuple[str, str], Membership] = {}
        self.workspaces: dict[str, Workspace] = {}
        self.settings: dict[str, str] = {}
        self.fail: dict[str, Exception] = {}

    def _check(self, op: str) -> None:
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    async def ping(self) -> None:
        self._check("ping")

    @staticmethod
    def _versioned(
        table: dict[str, Any], record_id: str, changes: dict, expected_version: int | None
    ) -> Any:
        record = table.get(record_id)
        if record is None:
            raise NotFoundError(f"{record_id} not found")
        if expected_version is not None and record.version != expected_version:
            raise StaleRecordError(f"{record_id} was modified concurrently")
        data = {**record.model_dump(), **changes}
        data["version"] = record.version + 1
        data["updated_at"] = utc_now()
        table[record_id] = type(record)(**data)
        return _copy(table[record_id])

    # Users

    async def create_user(self, user: User) -> User:
        if user.id in self.users or any(u.email == user.email for u in self.users.values()):
            raise RecordExistsError("User already exists")
        self.users[user.id] = _copy(user)
        return _copy(user)

    async def get_user(self, user_id: str) -> User | None:
        user = self.users.get(user_id)
        return _copy(user) if user else None

    async def get_user_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if user.email == email:
                return _copy(user)
        return None

    # Groups

    async def create_group(self, group: Group) -> Group:
        if group.id in self.groups or any(
            g.name == group.name or g.namespace == group.namespace for g in self.groups.values()
        ):
            raise RecordExistsError("Group already exists")
        self.groups[group.id] = _copy(group)
        return _copy(group)

    async def get_group(self, group_id: str) -> Group | None:
        group = self.groups.get(group_id)
        return _copy(group) if group else None

    async def get_group_by_namespace(self, namespace: str) -> Group | None:
        for group in self.groups.values():
            if group.namespace == namespace:
                return _copy(group)
        return None

    async def list_groups(
        self, group_ids: list[str] | None, limit: int, offset: int
    ) -> Page[Group]:
        groups = sorted(
            (g for g in self.groups.values() if group_ids is None or g.id in group_ids),
            key=lambda g: g.name,
        )
        return Page(
            items=[_copy(g) for g in groups[offset : offset + limit]],
            total=len(groups),
            limit=limit,
            offset=offset,
        )

    async def update_group(
        self, group_id: str, changes: dict, expected_version: int | None = None
    ) -> Group:
        self._check("update_group")
        return self._versioned(self.groups, group_id, changes, expected_version)

    async def delete_group(self, group_id: str) -> bool:
        return self.groups.pop(group_id, None) is not None

    # Memberships

    async def add_membership(self, membership: Membership) -> Membership:
        key = (membership.user_id, membership.group_id)
        if key in self.memberships:
            raise RecordExistsError("Membership already exists")
        self.memberships[key] = _copy(membership)
        return _copy(membership)

    async def get_membership(self, user_id: str, group_id: str) -> Membership | None:
        membership = self.memberships.get((user_id, group_id))
        return _copy(membership) if membership else None

    async def list_memberships(self, group_id: str) -> list[Membership]:
        return [_copy(m) for m in self.memberships.values() if m.group_id == group_id]

    async def list_group_ids_for_user(self, user_id: str) -> list[str]:
        return sorted(m.group_id for m in self.memberships.values() if m.user_id == user_id)

    async def set_membership_role(self, user_id: str, group_id: str, role: str) -> Membership:
        membership = self.memberships.get((user_id, group_id))
        if membership is None:
            raise NotFoundError("Membership not found")
        membership.role = role
        return _copy(membership)

    async def delete_membership(self, user_id: str, group_id: str) -> bool:
        return self.memberships.pop((user_id, group_id), None) is not None

    async def delete_memberships_for_group(self, group_id: str) -> int:
        keys = [key for key in self.memberships if key[1] == group_id]
        for key in keys:
            del self.memberships[key]
        return len(keys)

    async def count_memberships(self, group_id: str) -> int:
        return sum(1 for m in self.memberships.values() if m.group_id == group_id)

    # Workspaces

    async def create_workspace(self, workspace: Workspace) -> Workspace:
        self._check("create_workspace")
        if workspace.id in self.workspaces:
            raise RecordExistsError("Workspace already exists")
        self.workspaces[workspace.id] = _copy(workspace)
        return _copy(workspace)

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        workspace = self.workspaces.get(workspace_id)
        return _copy(workspace) if workspace else None

    async def list_workspaces(
        self,
        *,
        group_ids: list[str] | None = None,
        owner_user_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[Workspace]:
        def visible(ws: Workspace) -> bool:
            if group_ids is None and owner_user_id is None:
                return True
            return (group_ids is not None and ws.group_id in group_ids) or (
                owner_user_id is not None and ws.owner_user_id == owner_user_id
            )

        matches = sorted(
            (
                ws
                for ws in self.workspaces.values()
                if visible(ws) and (status is None or ws.status == status)
            ),
            key=lambda ws: (ws.created_at, ws.id),
            reverse=True,
        )
        return Page(
            items=[_copy(ws) for ws in matches[offset : offset + limit]],
            total=len(matches),
            limit=limit,
            offset=offset,
        )

    async def count_workspaces(self, group_id: str) -> int:
        return sum(1 for ws in self.workspaces.values() if ws.group_id == group_id)

    async def update_workspace(
        self, workspace_id: str, changes: dict, expected_version: int | None = None
    ) -> Workspace:
        self._check("update_workspace")
        return self._versioned(self.workspaces, workspace_id, changes, expected_version)

    async def delete_workspace(self, workspace_id: str) -> bool:
        self._check("delete_workspace")
        return self.workspaces.pop(workspace_id, None) is not None

    # Settings

    async def get_setting(self, key: str) -> str | None:
        return self.settings.get(key)

    async def put_setting(self, key: str, value: str) -> None:
        self.settings[key] = value


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with zero delays so retries and probes run immediately."""
    return Settings(
        probe=ProbeConfig(delay=0.0),
        proxy=ProxyConfig(cas_base_delay=0.0, cas_max_delay=0.0),
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
async def control_plane(store, cluster, settings):
    plane: ControlPlane = build_control_plane(store, cluster, settings)
    yield plane
    await plane.shutdown()


@pytest.fixture
def admin() -> Caller:
    return Caller(user_id="admin-1", email="admin@example.com", is_platform_admin=True)


@pytest.fixture
def alice() -> Caller:
    return Caller(user_id="alice", email="alice@example.com")


@pytest.fixture
def bob() -> Caller:
    return Caller(user_id="bob", email="bob@example.com")


@pytest.fixture
async def group(control_plane: ControlPlane, admin: Caller, alice: Caller, bob: Caller) -> Group:
    """Group g1 (namespace group-g1) with alice as member; bob is registered only."""
    tenants = control_plane.tenants
    for caller in (admin, alice, bob):
        await tenants.register_caller(caller)
    created = await tenants.create_group(admin, name="g1")
    await tenants.add_member(admin, created.id, user_id=alice.user_id, role=GroupRole.MEMBER)
    return await tenants.require_group(created.id)
