"""Record store interface.

All reads return detached records; mutating a returned record has no effect
until it is written back through an update method.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from wsplane.core.models import Group, Membership, User, Workspace

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a paginated listing."""

    items: list[T]
    total: int
    limit: int
    offset: int


class RecordStore(ABC):
    """Interface for the persisted record store.

    Implementations: SqlRecordStore

    Conditional creates raise RecordExistsError when the key is taken.
    Updates with expected_version raise StaleRecordError when the stored
    version differs, and NotFoundError when the record is gone.
    """

    @abstractmethod
    async def ping(self) -> None: ...

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User | None: ...

    # Groups

    @abstractmethod
    async def create_group(self, group: Group) -> Group: ...

    @abstractmethod
    async def get_group(self, group_id: str) -> Group | None: ...

    @abstractmethod
    async def get_group_by_namespace(self, namespace: str) -> Group | None: ...

    @abstractmethod
    async def list_groups(
        self, group_ids: list[str] | None, limit: int, offset: int
    ) -> Page[Group]:
        """List groups ordered by name. group_ids=None lists all."""
        ...

    @abstractmethod
    async def update_group(
        self, group_id: str, changes: dict[str, Any], expected_version: int | None = None
    ) -> Group: ...

    @abstractmethod
    async def delete_group(self, group_id: str) -> bool: ...

    # Memberships

    @abstractmethod
    async def add_membership(self, membership: Membership) -> Membership: ...

    @abstractmethod
    async def get_membership(self, user_id: str, group_id: str) -> Membership | None: ...

    @abstractmethod
    async def list_memberships(self, group_id: str) -> list[Membership]: ...

    @abstractmethod
    async def list_group_ids_for_user(self, user_id: str) -> list[str]: ...

    @abstractmethod
    async def set_membership_role(self, user_id: str, group_id: str, role: str) -> Membership: ...

    @abstractmethod
    async def delete_membership(self, user_id: str, group_id: str) -> bool: ...

    @abstractmethod
    async def delete_memberships_for_group(self, group_id: str) -> int: ...

    @abstractmethod
    async def count_memberships(self, group_id: str) -> int: ...

    # Workspaces

    @abstractmethod
    async def create_workspace(self, workspace: Workspace) -> Workspace: ...

    @abstractmethod
    async def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    @abstractmethod
    async def list_workspaces(
        self,
        *,
        group_ids: list[str] | None = None,
        owner_user_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[Workspace]:
        """List workspaces newest first.

        group_ids and owner_user_id combine with OR (visible-to-caller
        filter); both None means no visibility restriction.
        """
        ...

    @abstractmethod
    async def count_workspaces(self, group_id: str) -> int: ...

    @abstractmethod
    async def update_workspace(
        self, workspace_id: str, changes: dict[str, Any], expected_version: int | None = None
    ) -> Workspace: ...

    @abstractmethod
    async def delete_workspace(self, workspace_id: str) -> bool: ...

    # Platform settings

    @abstractmethod
    async def get_setting(self, key: str) -> str | None: ...

    @abstractmethod
    async def put_setting(self, key: str, value: str) -> None: ...
