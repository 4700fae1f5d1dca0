"""Cluster API interface.

Creates are create-if-absent (return False when the object already exists),
deletes tolerate not-found. Every other failure surfaces as
InfrastructureError; a stale resourceVersion surfaces as VersionConflictError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class DeploymentSpec:
    """Desired Deployment for a workspace or a proxy."""

    namespace: str
    name: str
    image: str
    container_port: int
    replicas: int = 0
    cpu: str | None = None
    memory: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    env_from_secret: str | None = None
    config_map: str | None = None  # mounted read-only at config_mount_path
    config_mount_path: str = "/etc/nginx/conf.d"
    volume_claim: str | None = None  # mounted read-write at volume_mount_path
    volume_mount_path: str = "/home/coder"
    pod_annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeClaimSpec:
    """Desired ReadWriteOnce PersistentVolumeClaim."""

    namespace: str
    name: str
    storage: str
    storage_class: str | None = None  # None: cluster default class
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceSpec:
    """Desired ClusterIP Service."""

    namespace: str
    name: str
    selector: dict[str, str]
    port: int
    target_port: int
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class DeploymentInfo:
    """Observed Deployment state."""

    name: str
    desired: int
    ready: int
    available: int = 0
    image: str | None = None
    failed: bool = False
    failure_message: str | None = None
    pod_annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ConfigMapInfo:
    """ConfigMap data with its resourceVersion (CAS token)."""

    name: str
    data: dict[str, str]
    resource_version: str


@dataclass
class PodInfo:
    """Observed pod state."""

    name: str
    phase: str
    ready: bool
    restarts: int = 0
    node: str | None = None
    created_at: datetime | None = None


@dataclass
class NamespaceUsage:
    """Live resource usage summed over all pods of a namespace."""

    cpu_cores: float
    memory_bytes: float
    pods: int


class ClusterClient(ABC):
    """Interface for the cluster API.

    Implementations: KubernetesCluster
    """

    # Connectivity

    @abstractmethod
    async def ping(self) -> None:
        """Raise InfrastructureError if the API server is unreachable."""
        ...

    # Namespaces and quota

    @abstractmethod
    async def namespace_exists(self, name: str) -> bool: ...

    @abstractmethod
    async def create_namespace(self, name: str, labels: dict[str, str]) -> bool:
        """Create namespace if absent and wait until it is Active.

        Returns:
            True if created by this call, False if it already existed
        """
        ...

    @abstractmethod
    async def delete_namespace(self, name: str) -> None: ...

    @abstractmethod
    async def create_resource_quota(
        self, namespace: str, name: str, hard: dict[str, str]
    ) -> bool:
        """Create ResourceQuota if absent. Returns False if it already existed."""
        ...

    @abstractmethod
    async def replace_resource_quota(
        self, namespace: str, name: str, hard: dict[str, str]
    ) -> None: ...

    # Workloads

    @abstractmethod
    async def create_deployment(self, spec: DeploymentSpec) -> bool: ...

    @abstractmethod
    async def read_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        """Read Deployment state. Returns None if absent."""
        ...

    @abstractmethod
    async def scale_deployment(self, namespace: str, name: str, replicas: int) -> None:
        """Set desired replicas. A missing Deployment is an InfrastructureError."""
        ...

    @abstractmethod
    async def patch_pod_annotations(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> None:
        """Merge annotations into the Deployment pod template (rolls the pods)."""
        ...

    @abstractmethod
    async def delete_deployment(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def create_service(self, spec: ServiceSpec) -> bool: ...

    @abstractmethod
    async def service_exists(self, namespace: str, name: str) -> bool: ...

    @abstractmethod
    async def delete_service(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def create_secret(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool: ...

    @abstractmethod
    async def secret_exists(self, namespace: str, name: str) -> bool: ...

    @abstractmethod
    async def delete_secret(self, namespace: str, name: str) -> None: ...

    # Persistent volume claims

    @abstractmethod
    async def create_volume_claim(self, spec: VolumeClaimSpec) -> bool: ...

    @abstractmethod
    async def volume_claim_exists(self, namespace: str, name: str) -> bool: ...

    @abstractmethod
    async def delete_volume_claim(self, namespace: str, name: str) -> None: ...

    # Config maps (CAS)

    @abstractmethod
    async def read_config_map(self, namespace: str, name: str) -> ConfigMapInfo | None: ...

    @abstractmethod
    async def create_config_map(
        self, namespace: str, name: str, data: dict[str, str], labels: dict[str, str]
    ) -> bool: ...

    @abstractmethod
    async def replace_config_map(
        self, namespace: str, name: str, data: dict[str, str], resource_version: str
    ) -> ConfigMapInfo:
        """Replace data only if resource_version is current.

        Raises:
            VersionConflictError: If the object changed since resource_version
        """
        ...

    @abstractmethod
    async def delete_config_map(self, namespace: str, name: str) -> None: ...

    # Aggregate route object

    @abstractmethod
    async def apply_ingress_route(self, namespace: str, name: str, body: dict) -> None:
        """Create the route object, or overwrite its spec if it exists."""
        ...

    @abstractmethod
    async def delete_ingress_route(self, namespace: str, name: str) -> None: ...

    # Observation

    @abstractmethod
    async def list_pods(self, namespace: str, label_selector: str) -> list[PodInfo]: ...

    @abstractmethod
    async def read_pod_log(self, namespace: str, pod: str, tail_lines: int) -> str: ...

    @abstractmethod
    async def read_namespace_usage(self, namespace: str) -> NamespaceUsage:
        """Sum live CPU/memory usage of all pods (metrics API)."""
        ...
