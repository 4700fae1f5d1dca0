"""Kubernetes implementation of ClusterClient.

The official kubernetes client is synchronous; every call runs in a worker
thread via asyncio.to_thread with a per-request timeout.

Status handling:
- 409 on create: object exists, treated as a no-op (returns False)
- 404 on delete: already gone, ignored
- 409 on ConfigMap replace: VersionConflictError (stale resourceVersion)
- anything else: InfrastructureError with the ApiException as cause

Configuration via KubernetesConfig (WSPLANE_KUBERNETES__ env prefix).
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as TransportError

from wsplane.app.config import KubernetesConfig, ProxyConfig
from wsplane.core.domain.resources import parse_cpu, parse_memory
from wsplane.core.errors import InfrastructureError, VersionConflictError
from wsplane.core.interfaces.cluster import (
    ClusterClient,
    ConfigMapInfo,
    DeploymentInfo,
    DeploymentSpec,
    NamespaceUsage,
    PodInfo,
    ServiceSpec,
    VolumeClaimSpec,
)
from wsplane.core.logging_schema import ErrorClass, LogEvent
from wsplane.core.retryable import is_api_retryable, with_retry

logger = logging.getLogger(__name__)

_METRICS_GROUP = "metrics.k8s.io"
_METRICS_VERSION = "v1beta1"


def load_api_client(cfg: KubernetesConfig) -> client.ApiClient:
    """Build an ApiClient from in-cluster credentials or a kubeconfig."""
    if cfg.in_cluster:
        kube_config.load_incluster_config()
        return client.ApiClient()
    return kube_config.new_client_from_config(config_file=cfg.kubeconfig, context=cfg.context)


# =============================================================================
# Object builders
# =============================================================================


def build_deployment(spec: DeploymentSpec) -> client.V1Deployment:
    """Convert a DeploymentSpec into a V1Deployment."""
    selector = {"app": spec.name}
    container = client.V1Container(
        name=spec.name,
        image=spec.image,
        ports=[client.V1ContainerPort(container_port=spec.container_port)],
        env=[client.V1EnvVar(name=k, value=v) for k, v in sorted(spec.env.items())] or None,
        readiness_probe=client.V1Probe(
            tcp_socket=client.V1TCPSocketAction(port=spec.container_port),
            period_seconds=5,
            failure_threshold=2,
        ),
    )
    if spec.cpu and spec.memory:
        quantities = {"cpu": spec.cpu, "memory": spec.memory}
        container.resources = client.V1ResourceRequirements(
            requests=quantities, limits=dict(quantities)
        )
    if spec.env_from_secret:
        container.env_from = [
            client.V1EnvFromSource(
                secret_ref=client.V1SecretEnvSource(name=spec.env_from_secret)
            )
        ]

    mounts: list[client.V1VolumeMount] = []
    volumes: list[client.V1Volume] = []
    if spec.config_map:
        mounts.append(
            client.V1VolumeMount(name="config", mount_path=spec.config_mount_path, read_only=True)
        )
        volumes.append(
            client.V1Volume(
                name="config",
                config_map=client.V1ConfigMapVolumeSource(name=spec.config_map),
            )
        )
    if spec.volume_claim:
        mounts.append(client.V1VolumeMount(name="home", mount_path=spec.volume_mount_path))
        volumes.append(
            client.V1Volume(
                name="home",
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=spec.volume_claim
                ),
            )
        )
    container.volume_mounts = mounts or None

    # A ReadWriteOnce claim cannot be attached to the old and new pod at once
    strategy = client.V1DeploymentStrategy(type="Recreate") if spec.volume_claim else None

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=spec.name, namespace=spec.namespace, labels={**spec.labels, **selector}
        ),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas,
            strategy=strategy,
            selector=client.V1LabelSelector(match_labels=selector),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    labels={**spec.labels, **selector},
                    annotations=spec.pod_annotations or None,
                ),
                spec=client.V1PodSpec(containers=[container], volumes=volumes or None),
            ),
        ),
    )


def build_service(spec: ServiceSpec) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(name=spec.name, namespace=spec.namespace, labels=spec.labels),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector=spec.selector,
            ports=[
                client.V1ServicePort(name="http", port=spec.port, target_port=spec.target_port)
            ],
        ),
    )


def build_volume_claim(spec: VolumeClaimSpec) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=spec.name, namespace=spec.namespace, labels=spec.labels),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=spec.storage_class,
            resources=client.V1VolumeResourceRequirements(requests={"storage": spec.storage}),
        ),
    )


def deployment_info(deployment: client.V1Deployment) -> DeploymentInfo:
    """Summarize a V1Deployment into DeploymentInfo.

    A Deployment is failed when a ReplicaFailure condition is true or its
    progress deadline was exceeded.
    """
    status = deployment.status or client.V1DeploymentStatus()
    failed = False
    failure_message = None
    for cond in status.conditions or []:
        if (cond.type == "ReplicaFailure" and cond.status == "True") or (
            cond.type == "Progressing" and cond.reason == "ProgressDeadlineExceeded"
        ):
            failed = True
            failure_message = cond.message
            break

    template = deployment.spec.template
    containers = template.spec.containers if template and template.spec else []
    return DeploymentInfo(
        name=deployment.metadata.name,
        desired=deployment.spec.replicas or 0,
        ready=status.ready_replicas or 0,
        available=status.available_replicas or 0,
        image=containers[0].image if containers else None,
        failed=failed,
        failure_message=failure_message,
        pod_annotations=dict(template.metadata.annotations or {})
        if template and template.metadata
        else {},
    )


def pod_info(pod: client.V1Pod) -> PodInfo:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    return PodInfo(
        name=pod.metadata.name,
        phase=(pod.status.phase if pod.status else None) or "Unknown",
        ready=bool(statuses) and all(s.ready for s in statuses),
        restarts=sum(s.restart_count or 0 for s in statuses),
        node=pod.spec.node_name if pod.spec else None,
        created_at=pod.metadata.creation_timestamp,
    )


# =============================================================================
# Cluster client
# =============================================================================


class KubernetesCluster(ClusterClient):
    """ClusterClient backed by the official kubernetes client."""

    def __init__(
        self,
        cfg: KubernetesConfig,
        proxy_cfg: ProxyConfig,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self._cfg = cfg
        self._crd_group = proxy_cfg.crd_group
        self._crd_version = proxy_cfg.crd_version
        self._crd_plural = proxy_cfg.crd_plural
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.version = client.VersionApi(api_client)

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(
                fn, *args, _request_timeout=self._cfg.api_timeout, **kwargs
            )
        except (TransportError, OSError) as exc:
            raise InfrastructureError(f"Cluster API unreachable: {exc}", cause=exc) from exc

    def _failure(self, action: str, target: str, exc: ApiException) -> InfrastructureError:
        logger.warning(
            "Cluster call failed: %s %s (%s)",
            action,
            target,
            exc.status,
            extra={
                "event": LogEvent.CLUSTER_CALL_FAILED,
                "action": action,
                "target": target,
                "status": exc.status,
                "error_class": ErrorClass.TRANSIENT
                if is_api_retryable(exc)
                else ErrorClass.PERMANENT,
            },
        )
        return InfrastructureError(f"Failed to {action} {target}: {exc.reason}", cause=exc)

    async def _create(
        self, action: str, target: str, fn: Callable[..., Any], **kwargs: Any
    ) -> bool:
        try:
            await self._call(fn, **kwargs)
        except ApiException as exc:
            if exc.status == 409:
                logger.debug("%s already exists", target)
                return False
            raise self._failure(action, target, exc) from exc
        logger.info("Created %s", target)
        return True

    async def _delete(
        self, action: str, target: str, fn: Callable[..., Any], **kwargs: Any
    ) -> None:
        try:
            await self._call(fn, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                logger.debug("%s already absent", target)
                return
            raise self._failure(action, target, exc) from exc
        logger.info("Deleted %s", target)

    async def _exists(
        self, action: str, target: str, fn: Callable[..., Any], **kwargs: Any
    ) -> bool:
        try:
            await self._call(fn, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise self._failure(action, target, exc) from exc
        return True

    # =========================================================================
    # Connectivity
    # =========================================================================

    async def ping(self) -> None:
        try:
            await self._call(self.version.get_code)
        except ApiException as exc:
            raise self._failure("reach", "API server", exc) from exc

    # =========================================================================
    # Namespaces and quota
    # =========================================================================

    async def namespace_exists(self, name: str) -> bool:
        return await self._exists(
            "read", f"namespace/{name}", self.core_v1.read_namespace, name=name
        )

    async def create_namespace(self, name: str, labels: dict[str, str]) -> bool:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        created = await self._create(
            "create", f"namespace/{name}", self.core_v1.create_namespace, body=body
        )
        if created:
            await self._wait_namespace_active(name)
        return created

    async def _wait_namespace_active(self, name: str) -> None:
        deadline = time.monotonic() + self._cfg.namespace_ready_timeout
        while True:
            try:
                ns = await self._call(self.core_v1.read_namespace, name=name)
                if ns.status and ns.status.phase == "Active":
                    return
            except ApiException as exc:
                if exc.status != 404:
                    raise self._failure("read", f"namespace/{name}", exc) from exc
            if time.monotonic() >= deadline:
                raise InfrastructureError(
                    f"Namespace {name} not active after {self._cfg.namespace_ready_timeout}s"
                )
            await asyncio.sleep(self._cfg.namespace_ready_poll)

    async def delete_namespace(self, name: str) -> None:
        await self._delete("delete", f"namespace/{name}", self.core_v1.delete_namespace, name=name)

    async def create_resource_quota(
        self, namespace: str, name: str, hard: dict[str, str]
    ) -> bool:
        body = client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            spec=client.V1ResourceQuotaSpec(hard=hard),
        )

        async def attempt() -> bool:
            try:
                await self._call(
                    self.core_v1.create_namespaced_resource_quota, namespace=namespace, body=body
                )
            except ApiException as exc:
                if exc.status == 409:
                    return False
                raise
            return True

        try:
            # 404 and 5xx are retried; a new namespace is briefly invisible to admission
            created = await with_retry(
                attempt,
                max_retries=self._cfg.quota_retry_attempts - 1,
                base_delay=self._cfg.quota_retry_delay,
                max_delay=self._cfg.quota_retry_delay,
            )
        except ApiException as exc:
            raise self._failure("create", f"resourcequota/{namespace}/{name}", exc) from exc
        if created:
            logger.info("Created resourcequota/%s/%s", namespace, name)
        return created

    async def replace_resource_quota(
        self, namespace: str, name: str, hard: dict[str, str]
    ) -> None:
        body = {"spec": {"hard": hard}}
        try:
            await self._call(
                self.core_v1.patch_namespaced_resource_quota,
                name=name,
                namespace=namespace,
                body=body,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise self._failure("patch", f"resourcequota/{namespace}/{name}", exc) from exc
            await self.create_resource_quota(namespace, name, hard)

    # =========================================================================
    # Workloads
    # =========================================================================

    async def create_deployment(self, spec: DeploymentSpec) -> bool:
        return await self._create(
            "create",
            f"deployment/{spec.namespace}/{spec.name}",
            self.apps_v1.create_namespaced_deployment,
            namespace=spec.namespace,
            body=build_deployment(spec),
        )

    async def read_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        try:
            deployment = await self._call(
                self.apps_v1.read_namespaced_deployment, name=name, namespace=namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise self._failure("read", f"deployment/{namespace}/{name}", exc) from exc
        return deployment_info(deployment)

    async def scale_deployment(self, namespace: str, name: str, replicas: int) -> None:
        try:
            await self._call(
                self.apps_v1.patch_namespaced_deployment_scale,
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": replicas}},
            )
        except ApiException as exc:
            raise self._failure("scale", f"deployment/{namespace}/{name}", exc) from exc
        logger.info("Scaled deployment/%s/%s to %d", namespace, name, replicas)

    async def patch_pod_annotations(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> None:
        body = {"spec": {"template": {"metadata": {"annotations": annotations}}}}
        try:
            await self._call(
                self.apps_v1.patch_namespaced_deployment, name=name, namespace=namespace, body=body
            )
        except ApiException as exc:
            raise self._failure("patch", f"deployment/{namespace}/{name}", exc) from exc

    async def delete_deployment(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"deployment/{namespace}/{name}",
            self.apps_v1.delete_namespaced_deployment,
            name=name,
            namespace=namespace,
        )

    async def create_service(self, spec: ServiceSpec) -> bool:
        return await self._create(
            "create",
            f"service/{spec.namespace}/{spec.name}",
            self.core_v1.create_namespaced_service,
            namespace=spec.namespace,
            body=build_service(spec),
        )

    async def service_exists(self, namespace: str, name: str) -> bool:
        return await self._exists(
            "read",
            f"service/{namespace}/{name}",
            self.core_v1.read_namespaced_service,
            name=name,
            namespace=namespace,
        )

    async def delete_service(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"service/{namespace}/{name}",
            self.core_v1.delete_namespaced_service,
            name=name,
            namespace=namespace,
        )

    async def create_secret(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            type="Opaque",
            string_data=data,
        )
        return await self._create(
            "create",
            f"secret/{namespace}/{name}",
            self.core_v1.create_namespaced_secret,
            namespace=namespace,
            body=body,
        )

    async def secret_exists(self, namespace: str, name: str) -> bool:
        return await self._exists(
            "read",
            f"secret/{namespace}/{name}",
            self.core_v1.read_namespaced_secret,
            name=name,
            namespace=namespace,
        )

    async def delete_secret(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"secret/{namespace}/{name}",
            self.core_v1.delete_namespaced_secret,
            name=name,
            namespace=namespace,
        )

    # =========================================================================
    # Persistent volume claims
    # =========================================================================

    async def create_volume_claim(self, spec: VolumeClaimSpec) -> bool:
        return await self._create(
            "create",
            f"persistentvolumeclaim/{spec.namespace}/{spec.name}",
            self.core_v1.create_namespaced_persistent_volume_claim,
            namespace=spec.namespace,
            body=build_volume_claim(spec),
        )

    async def volume_claim_exists(self, namespace: str, name: str) -> bool:
        return await self._exists(
            "read",
            f"persistentvolumeclaim/{namespace}/{name}",
            self.core_v1.read_namespaced_persistent_volume_claim,
            name=name,
            namespace=namespace,
        )

    async def delete_volume_claim(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"persistentvolumeclaim/{namespace}/{name}",
            self.core_v1.delete_namespaced_persistent_volume_claim,
            name=name,
            namespace=namespace,
        )

    # =========================================================================
    # Config maps
    # =========================================================================

    async def read_config_map(self, namespace: str, name: str) -> ConfigMapInfo | None:
        try:
            cm = await self._call(
                self.core_v1.read_namespaced_config_map, name=name, namespace=namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise self._failure("read", f"configmap/{namespace}/{name}", exc) from exc
        return ConfigMapInfo(
            name=name, data=dict(cm.data or {}), resource_version=cm.metadata.resource_version
        )

    async def create_config_map(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            data=data,
        )
        return await self._create(
            "create",
            f"configmap/{namespace}/{name}",
            self.core_v1.create_namespaced_config_map,
            namespace=namespace,
            body=body,
        )

    async def replace_config_map(
        self, namespace: str, name: str, data: dict[str, str], resource_version: str
    ) -> ConfigMapInfo:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name, namespace=namespace, resource_version=resource_version
            ),
            data=data,
        )
        try:
            cm = await self._call(
                self.core_v1.replace_namespaced_config_map,
                name=name,
                namespace=namespace,
                body=body,
            )
        except ApiException as exc:
            if exc.status == 409:
                raise VersionConflictError(
                    f"configmap/{namespace}/{name} changed since version {resource_version}"
                ) from exc
            raise self._failure("replace", f"configmap/{namespace}/{name}", exc) from exc
        return ConfigMapInfo(
            name=name, data=dict(cm.data or {}), resource_version=cm.metadata.resource_version
        )

    async def delete_config_map(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"configmap/{namespace}/{name}",
            self.core_v1.delete_namespaced_config_map,
            name=name,
            namespace=namespace,
        )

    # =========================================================================
    # Aggregate route object
    # =========================================================================

    async def apply_ingress_route(self, namespace: str, name: str, body: dict) -> None:
        target = f"{self._crd_plural}/{namespace}/{name}"
        crd = {
            "group": self._crd_group,
            "version": self._crd_version,
            "namespace": namespace,
            "plural": self._crd_plural,
        }
        try:
            await self._call(self.custom.create_namespaced_custom_object, body=body, **crd)
            return
        except ApiException as exc:
            if exc.status != 409:
                raise self._failure("create", target, exc) from exc

        # JSON patch: replaces the whole spec, including the routes list
        patch = [{"op": "replace", "path": "/spec", "value": body["spec"]}]
        try:
            await self._call(
                self.custom.patch_namespaced_custom_object, name=name, body=patch, **crd
            )
        except ApiException as exc:
            raise self._failure("patch", target, exc) from exc

    async def delete_ingress_route(self, namespace: str, name: str) -> None:
        await self._delete(
            "delete",
            f"{self._crd_plural}/{namespace}/{name}",
            self.custom.delete_namespaced_custom_object,
            group=self._crd_group,
            version=self._crd_version,
            namespace=namespace,
            plural=self._crd_plural,
            name=name,
        )

    # =========================================================================
    # Observation
    # =========================================================================

    async def list_pods(self, namespace: str, label_selector: str) -> list[PodInfo]:
        try:
            pods = await self._call(
                self.core_v1.list_namespaced_pod, namespace=namespace, label_selector=label_selector
            )
        except ApiException as exc:
            raise self._failure("list", f"pods/{namespace}", exc) from exc
        return [pod_info(pod) for pod in pods.items]

    async def read_pod_log(self, namespace: str, pod: str, tail_lines: int) -> str:
        try:
            return await self._call(
                self.core_v1.read_namespaced_pod_log,
                name=pod,
                namespace=namespace,
                tail_lines=tail_lines,
            )
        except ApiException as exc:
            raise self._failure("read log of", f"pod/{namespace}/{pod}", exc) from exc

    async def read_namespace_usage(self, namespace: str) -> NamespaceUsage:
        try:
            result = await self._call(
                self.custom.list_namespaced_custom_object,
                group=_METRICS_GROUP,
                version=_METRICS_VERSION,
                namespace=namespace,
                plural="pods",
            )
        except ApiException as exc:
            raise self._failure("read metrics of", f"namespace/{namespace}", exc) from exc

        items = result.get("items", [])
        cpu = 0.0
        memory = 0.0
        for pod in items:
            for container in pod.get("containers", []):
                usage = container.get("usage", {})
                if usage.get("cpu"):
                    cpu += parse_cpu(usage["cpu"])
                if usage.get("memory"):
                    memory += parse_memory(usage["memory"])
        return NamespaceUsage(cpu_cores=cpu, memory_bytes=memory, pods=len(items))
