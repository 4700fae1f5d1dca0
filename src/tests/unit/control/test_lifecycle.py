"""Lifecycle controller scenarios against the in-memory cluster and store."""

import asyncio

import pytest

from wsplane.control import ControlPlane
from wsplane.control.lifecycle import DEFAULT_IMAGE_SETTING, CreateWorkspaceRequest
from wsplane.core.domain import Caller, GroupRole, WorkspaceStatus
from wsplane.core.domain.naming import workspace_cluster_name
from wsplane.core.errors import (
    ConflictError,
    ForbiddenError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from wsplane.core.interfaces import PodInfo
from wsplane.core.models import Group, Workspace


async def _drain(control_plane: ControlPlane) -> None:
    """Let scheduled probes run to completion."""
    for _ in range(20):
        if not control_plane.probes.pending():
            return
        await asyncio.sleep(0)


async def _create(
    control_plane: ControlPlane, caller: Caller, group: Group, name: str = "w", **kwargs
) -> Workspace:
    return await control_plane.lifecycle.create(
        caller, CreateWorkspaceRequest(group_id=group.id, name=name, **kwargs)
    )


@pytest.fixture
async def carol(control_plane: ControlPlane, admin: Caller, group: Group) -> Caller:
    """A second plain member of g1."""
    caller = Caller(user_id="carol", email="carol@example.com")
    await control_plane.tenants.register_caller(caller)
    await control_plane.tenants.add_member(admin, group.id, user_id=caller.user_id)
    return caller


class TestCreate:
    async def test_record_starts_stopped(self, control_plane, cluster, store, alice, group):
        ws = await _create(control_plane, alice, group, tier="single-user")

        assert ws.status == WorkspaceStatus.STOPPED
        assert ws.replicas == 0
        assert ws.owner_user_id == alice.user_id
        assert ws.resources == {"cpu": "1", "memory": "2Gi", "storage": "20Gi"}
        assert ws.credential
        name = workspace_cluster_name(ws.id)
        assert ws.url == f"https://workspaces.local/{name}/"
        assert cluster.deployments[(group.namespace, name)].replicas == 0
        assert await store.get_workspace(ws.id) is not None

    async def test_image_from_platform_setting(self, control_plane, cluster, store, alice, group):
        await store.put_setting(DEFAULT_IMAGE_SETTING, "custom/ide:2")
        ws = await _create(control_plane, alice, group)
        assert ws.image == "custom/ide:2"

    async def test_explicit_image_wins(self, control_plane, store, alice, group):
        await store.put_setting(DEFAULT_IMAGE_SETTING, "custom/ide:2")
        ws = await _create(control_plane, alice, group, image="mine:1")
        assert ws.image == "mine:1"

    async def test_admin_sets_default_image(self, control_plane, cluster, admin, alice, group):
        lifecycle = control_plane.lifecycle
        assert await lifecycle.set_default_image(admin, " custom/ide:3 ") == "custom/ide:3"

        ws = await _create(control_plane, alice, group)

        assert ws.image == "custom/ide:3"
        name = workspace_cluster_name(ws.id)
        assert cluster.deployments[(group.namespace, name)].image == "custom/ide:3"
        assert await lifecycle.default_image() == "custom/ide:3"

    async def test_default_image_requires_platform_admin(self, control_plane, store, alice):
        with pytest.raises(ForbiddenError):
            await control_plane.lifecycle.set_default_image(alice, "custom/ide:3")
        assert store.settings == {}

    @pytest.mark.parametrize("image", ["", "   ", "bad image:1"])
    async def test_default_image_must_be_a_reference(self, control_plane, admin, image):
        with pytest.raises(ValidationError):
            await control_plane.lifecycle.set_default_image(admin, image)

    async def test_non_member_cannot_see_group(self, control_plane, bob, group):
        with pytest.raises(NotFoundError, match="Group not found"):
            await _create(control_plane, bob, group)

    async def test_unknown_tier(self, control_plane, store, alice, group):
        with pytest.raises(ValidationError):
            await _create(control_plane, alice, group, tier="gigantic")
        assert store.workspaces == {}

    async def test_provisioning_failure_leaves_no_record(
        self, control_plane, cluster, store, alice, group
    ):
        cluster.fail["create_deployment"] = InfrastructureError("quota exceeded")

        with pytest.raises(InfrastructureError, match="quota exceeded"):
            await _create(control_plane, alice, group)

        assert store.workspaces == {}
        assert not any(ns == group.namespace for ns, _ in cluster.secrets)


class TestActions:
    async def test_start_then_probe_converges_to_running(
        self, control_plane, cluster, store, alice, group
    ):
        ws = await _create(control_plane, alice, group)
        name = workspace_cluster_name(ws.id)
        assert ws.last_accessed_at is None

        started = await control_plane.lifecycle.start(alice, ws.id)

        assert started.status == WorkspaceStatus.STARTING
        assert started.replicas == 1
        assert started.last_accessed_at is not None
        assert ("scale_deployment", (group.namespace, name, 1)) in cluster.calls

        cluster.ready[(group.namespace, name)] = 1
        await _drain(control_plane)
        assert (await store.get_workspace(ws.id)).status == WorkspaceStatus.RUNNING

    async def test_start_while_running_is_a_conflict(self, control_plane, store, alice, group):
        ws = await _create(control_plane, alice, group)
        await store.update_workspace(ws.id, {"status": WorkspaceStatus.RUNNING, "replicas": 1})

        with pytest.raises(ConflictError, match="already running"):
            await control_plane.lifecycle.start(alice, ws.id)
        assert (await store.get_workspace(ws.id)).status == WorkspaceStatus.RUNNING

    async def test_stop_while_stopped_is_a_conflict(
        self, control_plane, cluster, store, alice, group
    ):
        ws = await _create(control_plane, alice, group)
        cluster.calls.clear()

        with pytest.raises(ConflictError, match="already stopped"):
            await control_plane.lifecycle.stop(alice, ws.id)

        after = await store.get_workspace(ws.id)
        assert after.status == WorkspaceStatus.STOPPED
        assert after.version == ws.version
        assert not cluster.calls

    async def test_stop_scales_to_zero(self, control_plane, cluster, store, alice, group):
        ws = await _create(control_plane, alice, group)
        await control_plane.lifecycle.start(alice, ws.id)

        stopped = await control_plane.lifecycle.stop(alice, ws.id)
        await _drain(control_plane)

        assert stopped.status == WorkspaceStatus.STOPPING
        assert stopped.replicas == 0
        assert (await store.get_workspace(ws.id)).status == WorkspaceStatus.STOPPED

    async def test_restart_from_stopped_starts(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        restarted = await control_plane.lifecycle.action(alice, ws.id, "restart")
        assert restarted.status == WorkspaceStatus.STARTING

    async def test_unknown_action(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        with pytest.raises(ValidationError, match="Invalid action type"):
            await control_plane.lifecycle.action(alice, ws.id, "pause")

    async def test_scale_failure_marks_error(self, control_plane, cluster, store, alice, group):
        ws = await _create(control_plane, alice, group)
        cluster.fail["scale_deployment"] = InfrastructureError("api down")

        with pytest.raises(InfrastructureError, match="Failed to scale workspace: api down"):
            await control_plane.lifecycle.start(alice, ws.id)

        assert (await store.get_workspace(ws.id)).status == WorkspaceStatus.ERROR
        assert control_plane.probes.pending() == []


class TestAccess:
    async def test_outsider_gets_not_found(self, control_plane, alice, bob, group):
        ws = await _create(control_plane, alice, group)
        with pytest.raises(NotFoundError):
            await control_plane.lifecycle.get(bob, ws.id)
        with pytest.raises(NotFoundError):
            await control_plane.lifecycle.start(bob, ws.id)

    async def test_member_can_read_but_not_manage(self, control_plane, alice, carol, group):
        ws = await _create(control_plane, alice, group)

        assert (await control_plane.lifecycle.get(carol, ws.id)).id == ws.id
        with pytest.raises(ForbiddenError):
            await control_plane.lifecycle.start(carol, ws.id)
        with pytest.raises(ForbiddenError):
            await control_plane.lifecycle.delete(carol, ws.id)

    async def test_group_admin_can_manage(self, control_plane, admin, alice, carol, group):
        ws = await _create(control_plane, alice, group)
        await control_plane.tenants.set_member_role(admin, group.id, carol.user_id, GroupRole.ADMIN)

        started = await control_plane.lifecycle.start(carol, ws.id)

        assert started.status == WorkspaceStatus.STARTING

    async def test_missing_workspace(self, control_plane, admin, group):
        with pytest.raises(NotFoundError, match="Workspace not found"):
            await control_plane.lifecycle.get(admin, "ws_missing")


class TestDelete:
    async def test_routes_follow_membership(self, control_plane, alice, group):
        w1 = await _create(control_plane, alice, group, name="w1")
        w2 = await _create(control_plane, alice, group, name="w2")
        n1, n2 = workspace_cluster_name(w1.id), workspace_cluster_name(w2.id)

        assert set(await control_plane.proxy.routes(group.namespace)) == {n1, n2}

        outcome = await control_plane.lifecycle.delete(alice, w1.id)

        assert outcome.record_deleted
        assert outcome.warnings == []
        assert await control_plane.proxy.routes(group.namespace) == {n2: f"/{n2}"}

    async def test_cluster_failures_become_warnings(
        self, control_plane, cluster, store, alice, group
    ):
        ws = await _create(control_plane, alice, group)
        cluster.fail["delete_deployment"] = InfrastructureError("stuck")

        outcome = await control_plane.lifecycle.delete(alice, ws.id)

        assert outcome.record_deleted
        assert len(outcome.warnings) == 1
        assert await store.get_workspace(ws.id) is None

    async def test_pending_probe_is_cancelled(self, control_plane, store, alice, group):
        ws = await _create(control_plane, alice, group)
        await control_plane.lifecycle.start(alice, ws.id)
        assert control_plane.probes.pending() == [ws.id]

        await control_plane.lifecycle.delete(alice, ws.id)
        await asyncio.sleep(0)

        assert control_plane.probes.pending() == []
        assert await store.get_workspace(ws.id) is None


class TestReads:
    async def test_list_visibility(self, control_plane, admin, alice, bob, group):
        mine = await _create(control_plane, alice, group, name="mine")
        theirs = await _create(control_plane, admin, group, name="theirs")

        alice_page = await control_plane.lifecycle.list_workspaces(alice)
        assert {ws.id for ws in alice_page.items} == {mine.id, theirs.id}
        assert (await control_plane.lifecycle.list_workspaces(bob)).total == 0
        assert (await control_plane.lifecycle.list_workspaces(admin)).total == 2

        filtered = await control_plane.lifecycle.list_workspaces(bob, group_id=group.id)
        assert filtered.items == []

    async def test_list_status_filter(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        await control_plane.lifecycle.start(alice, ws.id)
        await _create(control_plane, alice, group, name="idle")

        page = await control_plane.lifecycle.list_workspaces(alice, status="STARTING")

        assert [item.id for item in page.items] == [ws.id]
        with pytest.raises(ValidationError, match="Invalid status"):
            await control_plane.lifecycle.list_workspaces(alice, status="PAUSED")

    async def test_update_name(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        updated = await control_plane.lifecycle.update(alice, ws.id, name="renamed")
        assert updated.name == "renamed"
        assert updated.version == ws.version + 1

    async def test_sync_overwrites_from_cluster(self, control_plane, cluster, alice, group):
        ws = await _create(control_plane, alice, group)
        name = workspace_cluster_name(ws.id)
        cluster.deployments[(group.namespace, name)].replicas = 1
        cluster.ready[(group.namespace, name)] = 1

        synced = await control_plane.lifecycle.sync(alice, ws.id)

        assert synced.status == WorkspaceStatus.RUNNING
        assert synced.replicas == 1
        assert synced.usage["cpu"]["used"] == "0.500"

    async def test_metrics(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        snapshot = await control_plane.lifecycle.metrics(alice, ws.id)
        assert snapshot["pods"]["used"] == 1
        assert snapshot["storage"]["used"] == "0"

    async def test_logs(self, control_plane, cluster, alice, group):
        ws = await _create(control_plane, alice, group)
        pod = f"{workspace_cluster_name(ws.id)}-7d9f-abcde"
        cluster.pods[group.namespace] = [PodInfo(name=pod, phase="Running", ready=True)]
        cluster.pod_logs[pod] = "one\ntwo\nthree"

        assert await control_plane.lifecycle.logs(alice, ws.id, lines=2) == "two\nthree"

    async def test_logs_without_pods(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)
        with pytest.raises(NotFoundError, match="No pods found"):
            await control_plane.lifecycle.logs(alice, ws.id)

    @pytest.mark.parametrize("lines", [0, 1001])
    async def test_logs_line_bounds(self, control_plane, alice, group, lines):
        ws = await _create(control_plane, alice, group)
        with pytest.raises(ValidationError):
            await control_plane.lifecycle.logs(alice, ws.id, lines=lines)

    async def test_health_of_stopped_workspace(self, control_plane, alice, group):
        ws = await _create(control_plane, alice, group)

        report = {c.name: c for c in await control_plane.lifecycle.health(alice, ws.id)}

        assert set(report) == {"Deployment", "Service", "Secret", "Volume", "Pods"}
        assert all(component.healthy for component in report.values())
        assert report["Deployment"].detail == "0/0 replicas ready"

    async def test_health_reports_missing_objects(self, control_plane, cluster, alice, group):
        ws = await _create(control_plane, alice, group)
        name = workspace_cluster_name(ws.id)
        del cluster.services[(group.namespace, name)]
        del cluster.deployments[(group.namespace, name)]
        del cluster.volume_claims[(group.namespace, f"{name}-pvc")]

        report = {c.name: c for c in await control_plane.lifecycle.health(alice, ws.id)}

        assert not report["Deployment"].healthy
        assert report["Service"].detail == "Service not found"
        assert report["Volume"].detail == "Volume claim not found"
        assert not report["Pods"].healthy
