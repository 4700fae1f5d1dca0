"""Workspace lifecycle state machine.

States and the action transition table are plain data; every action goes
through plan_action() so disallowed transitions are rejected in one place.
"""

from dataclasses import dataclass
from enum import StrEnum

from wsplane.core.errors import ConflictError, ValidationError


class WorkspaceStatus(StrEnum):
    """Persisted workspace status."""

    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


class ActionType(StrEnum):
    """User-requested lifecycle action."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"


class GroupRole(StrEnum):
    """Role of a user inside a group."""

    MEMBER = "member"
    ADMIN = "admin"


@dataclass(frozen=True)
class Transition:
    """One row of the action transition table.

    Attributes:
        rejected_from: Statuses from which the action is a conflict
        target: Status persisted before the workload is scaled
        replicas: Desired replica count
        conflict_message: Message used when the action is rejected
    """

    rejected_from: frozenset[WorkspaceStatus]
    target: WorkspaceStatus
    replicas: int
    conflict_message: str = ""


# restart only ensures the workload is scaled up; it does not replace pods.
ACTION_TRANSITIONS: dict[ActionType, Transition] = {
    ActionType.START: Transition(
        rejected_from=frozenset({WorkspaceStatus.RUNNING}),
        target=WorkspaceStatus.STARTING,
        replicas=1,
        conflict_message="Workspace is already running",
    ),
    ActionType.STOP: Transition(
        rejected_from=frozenset({WorkspaceStatus.STOPPED}),
        target=WorkspaceStatus.STOPPING,
        replicas=0,
        conflict_message="Workspace is already stopped",
    ),
    ActionType.RESTART: Transition(
        rejected_from=frozenset(),
        target=WorkspaceStatus.STARTING,
        replicas=1,
    ),
}


def parse_action(value: str) -> ActionType:
    """Parse an action type, raising ValidationError for unknown values."""
    try:
        return ActionType(value)
    except ValueError:
        raise ValidationError(f"Invalid action type: {value!r}") from None


def derive_status(
    exists: bool, desired: int, ready: int, failed: bool = False
) -> WorkspaceStatus:
    """Map observed workload state to a WorkspaceStatus.

    Order matters: absence and zero replicas win over failure conditions,
    failure wins over partial readiness.
    """
    if not exists or desired == 0:
        return WorkspaceStatus.STOPPED
    if failed:
        return WorkspaceStatus.ERROR
    if ready < desired:
        return WorkspaceStatus.STARTING
    return WorkspaceStatus.RUNNING


def plan_action(current: WorkspaceStatus | str, action: ActionType | str) -> Transition:
    """Return the transition for action from current status.

    Raises:
        ValidationError: If action is not a known ActionType
        ConflictError: If the transition table rejects action from current
    """
    action = parse_action(action) if not isinstance(action, ActionType) else action
    transition = ACTION_TRANSITIONS[action]
    if WorkspaceStatus(current) in transition.rejected_from:
        raise ConflictError(transition.conflict_message)
    return transition
