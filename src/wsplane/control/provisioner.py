"""Resource Provisioner.

Creates and deletes the cluster objects backing one workspace:
credential secret, home volume claim, Deployment, ClusterIP Service and its
route through the namespace's shared proxy. Creation is a RollbackRunner
step list; deletion is best effort and reports failures as warnings.
"""

import logging
import time
from dataclasses import dataclass

from wsplane.app.config import KubernetesConfig, RuntimeConfig
from wsplane.app.metrics.collector import PROVISION_DURATION, PROVISION_TOTAL
from wsplane.control.proxy import ProxySynthesizer, StackState
from wsplane.control.rollback import RollbackRunner, Step
from wsplane.control.tenants import GROUP_ID_LABEL, MANAGED_BY_LABEL, TenantManager
from wsplane.core.domain import ResourceSpec
from wsplane.core.domain.naming import secret_name, volume_claim_name
from wsplane.core.interfaces import (
    ClusterClient,
    DeploymentSpec,
    ServiceSpec,
    VolumeClaimSpec,
)
from wsplane.core.logging_schema import Component, LogEvent
from wsplane.core.models import Group

logger = logging.getLogger(__name__)

WORKSPACE_ID_LABEL = "wsplane.io/workspace-id"


@dataclass
class ProvisionRequest:
    """Cluster-side description of one workspace."""

    workspace_id: str
    name: str  # cluster object name
    image: str
    resources: ResourceSpec
    credential: str
    replicas: int = 0


class ResourceProvisioner:
    """Idempotent create/delete of a workspace's cluster objects."""

    def __init__(
        self,
        cluster: ClusterClient,
        tenants: TenantManager,
        proxy: ProxySynthesizer,
        runtime_cfg: RuntimeConfig,
        kube_cfg: KubernetesConfig,
    ) -> None:
        self._cluster = cluster
        self._tenants = tenants
        self._proxy = proxy
        self._runtime = runtime_cfg
        self._kube_cfg = kube_cfg

    def _labels(self, group: Group, request: ProvisionRequest) -> dict[str, str]:
        return {
            MANAGED_BY_LABEL: self._kube_cfg.managed_by,
            WORKSPACE_ID_LABEL: request.workspace_id,
            GROUP_ID_LABEL: group.id,
        }

    def steps(self, group: Group, request: ProvisionRequest) -> list[Step]:
        """Ordered (action, compensation) pairs for provisioning request."""
        namespace = group.namespace
        name = request.name
        secret = secret_name(name)
        claim = volume_claim_name(name)
        labels = self._labels(group, request)
        stack = StackState()

        async def ensure_namespace() -> None:
            await self._tenants.ensure_namespace(group)

        async def create_secret() -> None:
            await self._cluster.create_secret(
                namespace, secret, {self._runtime.credential_env: request.credential}, labels
            )

        async def create_volume() -> None:
            await self._cluster.create_volume_claim(
                VolumeClaimSpec(
                    namespace=namespace,
                    name=claim,
                    storage=request.resources.storage,
                    storage_class=self._kube_cfg.storage_class,
                    labels=labels,
                )
            )

        async def create_workload() -> None:
            await self._cluster.create_deployment(
                DeploymentSpec(
                    namespace=namespace,
                    name=name,
                    image=request.image,
                    container_port=self._runtime.container_port,
                    replicas=request.replicas,
                    cpu=request.resources.cpu,
                    memory=request.resources.memory,
                    labels=labels,
                    env_from_secret=secret,
                    volume_claim=claim,
                    volume_mount_path=self._runtime.home_mount_path,
                )
            )

        async def create_service() -> None:
            await self._cluster.create_service(
                ServiceSpec(
                    namespace=namespace,
                    name=name,
                    selector={"app": name},
                    port=self._runtime.service_port,
                    target_port=self._runtime.container_port,
                    labels=labels,
                )
            )

        async def ensure_proxy() -> None:
            await self._proxy.ensure_stack(namespace, stack)

        async def remove_proxy() -> None:
            # Only a stack this run created is ours to remove
            if stack.created:
                await self._proxy.delete_stack(namespace)

        return [
            Step("namespace", ensure_namespace),
            Step("secret", create_secret, lambda: self._cluster.delete_secret(namespace, secret)),
            Step(
                "volume",
                create_volume,
                lambda: self._cluster.delete_volume_claim(namespace, claim),
            ),
            Step(
                "workload",
                create_workload,
                lambda: self._cluster.delete_deployment(namespace, name),
            ),
            Step("service", create_service, lambda: self._cluster.delete_service(namespace, name)),
            Step("proxy", ensure_proxy, remove_proxy),
            Step(
                "route",
                lambda: self._proxy.register(namespace, name),
                lambda: self._proxy.deregister(namespace, name),
            ),
        ]

    async def create(self, group: Group, request: ProvisionRequest) -> None:
        """Provision every object for request; roll back and re-raise on failure."""
        context = {
            "ws_id": request.workspace_id,
            "group_id": group.id,
            "namespace": group.namespace,
        }
        logger.info(
            "Provisioning %s in %s",
            request.name,
            group.namespace,
            extra={**context, "event": LogEvent.PROVISION_STARTED, "component": Component.RP},
        )

        start = time.perf_counter()
        try:
            await RollbackRunner(context).run(self.steps(group, request))
        except Exception:
            PROVISION_TOTAL.labels(result="failure").inc()
            raise
        finally:
            PROVISION_DURATION.observe(time.perf_counter() - start)

        PROVISION_TOTAL.labels(result="success").inc()
        logger.info(
            "Provisioned %s",
            request.name,
            extra={**context, "event": LogEvent.PROVISION_COMPLETE, "component": Component.RP},
        )

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        await self._cluster.scale_deployment(namespace, name, replicas)

    # =========================================================================
    # Deletion (best effort)
    # =========================================================================

    async def teardown(self, namespace: str, name: str) -> list[str]:
        """Delete the workload and its service, secret and volume claim.

        Returns warnings, never raises.
        """
        warnings: list[str] = []
        for kind, delete, target in (
            ("workload", self._cluster.delete_deployment, name),
            ("service", self._cluster.delete_service, name),
            ("secret", self._cluster.delete_secret, secret_name(name)),
            ("volume", self._cluster.delete_volume_claim, volume_claim_name(name)),
        ):
            try:
                await delete(namespace, target)
            except Exception as exc:
                warnings.append(self._warn(namespace, f"Failed to delete {kind} {target}: {exc}"))
        return warnings

    async def release_route(self, namespace: str, name: str) -> list[str]:
        try:
            await self._proxy.deregister(namespace, name)
        except Exception as exc:
            return [self._warn(namespace, f"Failed to deregister route for {name}: {exc}")]
        return []

    async def delete(self, namespace: str, name: str) -> list[str]:
        return await self.teardown(namespace, name) + await self.release_route(namespace, name)

    def _warn(self, namespace: str, message: str) -> str:
        logger.warning(
            "%s",
            message,
            extra={
                "event": LogEvent.TEARDOWN_WARNING,
                "component": Component.RP,
                "namespace": namespace,
            },
        )
        return message
