"""Identifier and cluster object naming rules.

Cluster names are derived from record ids only, so the mapping is
deterministic and collision-free for as long as ids are unique.
"""

import re

from ulid import ULID

from wsplane.core.errors import ValidationError

WORKSPACE_ID_PREFIX = "ws_"
GROUP_ID_PREFIX = "grp_"
WORKSPACE_NAME_PREFIX = "workspace-"
SECRET_SUFFIX = "-credentials"
VOLUME_SUFFIX = "-pvc"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_LABEL_MAX = 63


def new_workspace_id() -> str:
    return f"{WORKSPACE_ID_PREFIX}{ULID()}"


def new_group_id() -> str:
    return f"{GROUP_ID_PREFIX}{ULID()}"


def workspace_cluster_name(workspace_id: str) -> str:
    """Cluster object name for a workspace.

    workspace_cluster_name("ws_01HZX...") -> "workspace-01hzx..."
    """
    return WORKSPACE_NAME_PREFIX + workspace_id.removeprefix(WORKSPACE_ID_PREFIX).lower()


def secret_name(workload_name: str) -> str:
    return f"{workload_name}{SECRET_SUFFIX}"


def volume_claim_name(workload_name: str) -> str:
    return f"{workload_name}{VOLUME_SUFFIX}"


def route_prefix(workload_name: str) -> str:
    return f"/{workload_name}"


def is_dns_label(value: str) -> bool:
    return len(value) <= _DNS_LABEL_MAX and bool(_DNS_LABEL.match(value))


def namespace_for_group(group_name: str, prefix: str, explicit: str | None = None) -> str:
    """Resolve and validate the namespace bound to a group.

    Raises:
        ValidationError: If the resulting name is not a valid DNS label
    """
    namespace = explicit or f"{prefix}{group_name}"
    if not is_dns_label(namespace):
        raise ValidationError(
            f"Namespace {namespace!r} is not a valid DNS label "
            "(lowercase alphanumerics and '-', at most 63 characters)"
        )
    return namespace
