"""Core interfaces for the control plane."""

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
from wsplane.core.interfaces.store import Page, RecordStore

__all__ = [
    # Cluster
    "ClusterClient",
    "ConfigMapInfo",
    "DeploymentInfo",
    "DeploymentSpec",
    "NamespaceUsage",
    "PodInfo",
    "ServiceSpec",
    "VolumeClaimSpec",
    # Record store
    "Page",
    "RecordStore",
]
