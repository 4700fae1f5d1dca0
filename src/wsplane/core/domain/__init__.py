"""Domain models and enums."""

from wsplane.core.domain.identity import Caller
from wsplane.core.domain.resources import (
    TIERS,
    ResourceQuota,
    ResourceSpec,
    ResourceTier,
    resolve_resources,
)
from wsplane.core.domain.workspace import (
    ACTION_TRANSITIONS,
    ActionType,
    GroupRole,
    Transition,
    WorkspaceStatus,
    derive_status,
    plan_action,
)

__all__ = [
    "ActionType",
    "Caller",
    "GroupRole",
    "ResourceQuota",
    "ResourceSpec",
    "ResourceTier",
    "Transition",
    "WorkspaceStatus",
    "ACTION_TRANSITIONS",
    "TIERS",
    "derive_status",
    "plan_action",
    "resolve_resources",
]
