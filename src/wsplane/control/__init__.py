"""Control plane: orchestration engine wiring.

Components (leaves first):
- TenantManager: group <-> namespace <-> quota, membership
- ProxySynthesizer: shared proxy stack and aggregate route per namespace
- ResourceProvisioner: per-workspace cluster objects with rollback
- Reconciler / ProbeSupervisor: live state back into the record
- LifecycleController: workspace state machine on top of the above
"""

from dataclasses import dataclass

from wsplane.app.config import Settings
from wsplane.control.lifecycle import LifecycleController
from wsplane.control.provisioner import ResourceProvisioner
from wsplane.control.proxy import ProxySynthesizer
from wsplane.control.reconciler import ProbeSupervisor, Reconciler
from wsplane.control.tenants import TenantManager
from wsplane.core.interfaces import ClusterClient, RecordStore


@dataclass
class ControlPlane:
    tenants: TenantManager
    proxy: ProxySynthesizer
    provisioner: ResourceProvisioner
    reconciler: Reconciler
    probes: ProbeSupervisor
    lifecycle: LifecycleController

    async def shutdown(self) -> None:
        await self.probes.shutdown()


def build_control_plane(
    store: RecordStore, cluster: ClusterClient, settings: Settings
) -> ControlPlane:
    """Wire every component against one store and one cluster client."""
    tenants = TenantManager(store, cluster, settings.kubernetes, settings.groups)
    proxy = ProxySynthesizer(
        cluster, settings.proxy, settings.runtime, settings.kubernetes.managed_by
    )
    provisioner = ResourceProvisioner(
        cluster, tenants, proxy, settings.runtime, settings.kubernetes
    )
    reconciler = Reconciler(store, cluster)
    probes = ProbeSupervisor(reconciler, settings.probe.delay)
    lifecycle = LifecycleController(
        store,
        cluster,
        tenants,
        provisioner,
        reconciler,
        probes,
        settings.runtime,
        settings.probe,
    )
    return ControlPlane(
        tenants=tenants,
        proxy=proxy,
        provisioner=provisioner,
        reconciler=reconciler,
        probes=probes,
        lifecycle=lifecycle,
    )


__all__ = [
    "ControlPlane",
    "LifecycleController",
    "ProbeSupervisor",
    "ProxySynthesizer",
    "Reconciler",
    "ResourceProvisioner",
    "TenantManager",
    "build_control_plane",
]
