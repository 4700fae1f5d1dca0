"""Tenant Manager.

Owns the group <-> namespace <-> quota binding, group CRUD and membership.
Membership rows are the single source of truth for group roles; a user's
group list and a group's member count are always derived from them.
"""

import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from wsplane.app.config import GroupsConfig, KubernetesConfig
from wsplane.control.locks import KeyedLock
from wsplane.core.domain import Caller, GroupRole, ResourceQuota
from wsplane.core.domain.naming import namespace_for_group, new_group_id
from wsplane.core.domain.resources import usage_snapshot
from wsplane.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RecordExistsError,
    ValidationError,
    WsPlaneError,
)
from wsplane.core.interfaces import ClusterClient, Page, RecordStore
from wsplane.core.logging_schema import Component, LogEvent
from wsplane.core.models import Group, Membership, User

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
GROUP_ID_LABEL = "wsplane.io/group-id"


@dataclass
class GroupDetail:
    """Group record with its live namespace usage (None if unavailable)."""

    group: Group
    usage: dict | None


def quota_of(group: Group) -> ResourceQuota:
    return ResourceQuota.model_validate(group.quota)


class TenantManager:
    """Group, namespace and membership management."""

    def __init__(
        self,
        store: RecordStore,
        cluster: ClusterClient,
        kube_cfg: KubernetesConfig,
        groups_cfg: GroupsConfig,
    ) -> None:
        self._store = store
        self._cluster = cluster
        self._kube_cfg = kube_cfg
        self._groups_cfg = groups_cfg
        self._group_locks = KeyedLock()

    def group_guard(self, group_id: str) -> AbstractAsyncContextManager[None]:
        """Serializes workspace creation against deletion of the same group."""
        return self._group_locks.hold(group_id)

    def default_quota(self) -> ResourceQuota:
        cfg = self._groups_cfg
        return ResourceQuota(
            cpu=cfg.default_cpu,
            memory=cfg.default_memory,
            storage=cfg.default_storage,
            pods=cfg.default_pods,
        )

    # =========================================================================
    # Callers and roles
    # =========================================================================

    async def register_caller(self, caller: Caller) -> User:
        """Return the user record for caller, creating it on first sight."""
        user = await self._store.get_user(caller.user_id)
        if user is not None:
            return user
        try:
            return await self._store.create_user(
                User(
                    id=caller.user_id,
                    email=caller.email or f"{caller.user_id}@unknown.invalid",
                    is_platform_admin=caller.is_platform_admin,
                )
            )
        except RecordExistsError:
            # Registered concurrently by another request
            user = await self._store.get_user(caller.user_id)
            if user is None:
                raise ConflictError("Email is already registered to another user") from None
            return user

    async def group_ids_for_user(self, user_id: str) -> list[str]:
        return await self._store.list_group_ids_for_user(user_id)

    async def role_in(self, user_id: str, group_id: str) -> GroupRole | None:
        membership = await self._store.get_membership(user_id, group_id)
        return GroupRole(membership.role) if membership else None

    async def require_group(self, group_id: str) -> Group:
        group = await self._store.get_group(group_id)
        if group is None:
            raise NotFoundError("Group not found")
        return group

    async def _readable_group(self, caller: Caller, group_id: str) -> Group:
        group = await self.require_group(group_id)
        if caller.is_platform_admin or await self.role_in(caller.user_id, group_id):
            return group
        raise NotFoundError("Group not found")

    async def _manageable_group(self, caller: Caller, group_id: str) -> Group:
        group = await self._readable_group(caller, group_id)
        if caller.is_platform_admin:
            return group
        if await self.role_in(caller.user_id, group_id) != GroupRole.ADMIN:
            raise ForbiddenError("Group admin role required")
        return group

    # =========================================================================
    # Namespaces
    # =========================================================================

    async def ensure_namespace(self, group: Group) -> bool:
        """Create the group's namespace and quota if absent.

        Idempotent. Returns True if the namespace was created by this call.
        """
        created = await self._create_namespace(group)
        await self._apply_quota(group)
        return created

    async def _apply_quota(self, group: Group) -> None:
        await self._cluster.create_resource_quota(
            group.namespace, f"{group.namespace}-quota", quota_of(group).to_hard_limits()
        )

    async def _create_namespace(self, group: Group) -> bool:
        created = await self._cluster.create_namespace(
            group.namespace,
            labels={
                MANAGED_BY_LABEL: self._kube_cfg.managed_by,
                GROUP_ID_LABEL: group.id,
            },
        )
        if created:
            logger.info(
                "Namespace %s created for group %s",
                group.namespace,
                group.id,
                extra={
                    "event": LogEvent.NAMESPACE_CREATED,
                    "component": Component.TM,
                    "group_id": group.id,
                    "namespace": group.namespace,
                },
            )
        return created

    async def _remove_namespace(self, group: Group) -> None:
        """Best effort; a failure is logged and left for the operator."""
        try:
            await self._cluster.delete_namespace(group.namespace)
        except WsPlaneError as exc:
            logger.warning(
                "Failed to delete namespace %s: %s",
                group.namespace,
                exc,
                extra={
                    "event": LogEvent.TEARDOWN_WARNING,
                    "component": Component.TM,
                    "group_id": group.id,
                    "namespace": group.namespace,
                },
            )
            return
        logger.info(
            "Namespace %s deleted",
            group.namespace,
            extra={
                "event": LogEvent.NAMESPACE_DELETED,
                "component": Component.TM,
                "group_id": group.id,
                "namespace": group.namespace,
            },
        )

    # =========================================================================
    # Groups
    # =========================================================================

    async def create_group(
        self,
        caller: Caller,
        name: str,
        display_name: str | None = None,
        description: str | None = None,
        namespace: str | None = None,
        quota: ResourceQuota | None = None,
    ) -> Group:
        """Create a group, its namespace and quota; caller becomes group admin.

        Raises:
            ForbiddenError: Caller is not a platform admin
            ValidationError: Namespace is not a DNS label
            ConflictError: Namespace already bound or present in the cluster
        """
        if not caller.is_platform_admin:
            raise ForbiddenError("Platform admin role required")

        namespace = namespace_for_group(name, self._kube_cfg.namespace_prefix, namespace)
        if await self._store.get_group_by_namespace(namespace) is not None:
            raise ConflictError(f"Namespace {namespace} is already bound to a group")
        if await self._cluster.namespace_exists(namespace):
            raise ConflictError(f"Namespace {namespace} already exists in the cluster")

        quota = quota or self.default_quota()
        group = await self._store.create_group(
            Group(
                id=new_group_id(),
                name=name,
                display_name=display_name or name,
                description=description,
                namespace=namespace,
                quota=quota.model_dump(),
            )
        )

        created_namespace = False
        try:
            created_namespace = await self._create_namespace(group)
            await self._apply_quota(group)
        except Exception:
            # Only a namespace this call created is removed
            if created_namespace:
                await self._remove_namespace(group)
            await self._store.delete_group(group.id)
            raise

        await self._store.add_membership(
            Membership(user_id=caller.user_id, group_id=group.id, role=GroupRole.ADMIN)
        )
        group = await self._recount(group.id)

        logger.info(
            "Group %s created",
            group.id,
            extra={
                "event": LogEvent.GROUP_CREATED,
                "component": Component.TM,
                "group_id": group.id,
                "namespace": namespace,
                "user_id": caller.user_id,
            },
        )
        return group

    async def get_group(self, caller: Caller, group_id: str) -> GroupDetail:
        group = await self._readable_group(caller, group_id)
        usage = None
        try:
            live = await self._cluster.read_namespace_usage(group.namespace)
            usage = usage_snapshot(live.cpu_cores, live.memory_bytes, live.pods, quota_of(group))
        except WsPlaneError as exc:
            logger.warning(
                "Usage unavailable for namespace %s: %s",
                group.namespace,
                exc,
                extra={"component": Component.TM, "group_id": group.id},
            )
        return GroupDetail(group=group, usage=usage)

    async def list_groups(self, caller: Caller, limit: int = 50, offset: int = 0) -> Page[Group]:
        """Platform admins see every group, other callers their own."""
        group_ids = (
            None if caller.is_platform_admin else await self.group_ids_for_user(caller.user_id)
        )
        return await self._store.list_groups(group_ids, limit, offset)

    async def update_group(
        self,
        caller: Caller,
        group_id: str,
        display_name: str | None = None,
        description: str | None = None,
        quota: ResourceQuota | None = None,
    ) -> Group:
        group = await self._manageable_group(caller, group_id)
        if quota is not None and not caller.is_platform_admin:
            raise ForbiddenError("Platform admin role required to change quota")

        changes: dict = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if description is not None:
            changes["description"] = description
        if quota is not None:
            changes["quota"] = quota.model_dump()
        if not changes:
            return group

        updated = await self._store.update_group(group.id, changes, expected_version=group.version)
        if quota is not None and quota != quota_of(group):
            await self._cluster.replace_resource_quota(
                group.namespace, f"{group.namespace}-quota", quota.to_hard_limits()
            )
        return updated

    async def delete_group(self, caller: Caller, group_id: str) -> None:
        """Delete an empty group and its namespace.

        Raises:
            ForbiddenError: Caller is not a platform admin
            ConflictError: The group still owns workspaces (nothing is changed)
        """
        if not caller.is_platform_admin:
            raise ForbiddenError("Platform admin role required")

        async with self.group_guard(group_id):
            group = await self.require_group(group_id)

            count = await self._store.count_workspaces(group.id)
            if count:
                raise ConflictError(f"Group still has {count} workspace(s)")

            await self._store.delete_memberships_for_group(group.id)
            await self._remove_namespace(group)
            await self._store.delete_group(group.id)

        logger.info(
            "Group %s deleted",
            group.id,
            extra={
                "event": LogEvent.GROUP_DELETED,
                "component": Component.TM,
                "group_id": group.id,
                "user_id": caller.user_id,
            },
        )

    # =========================================================================
    # Membership
    # =========================================================================

    async def _recount(self, group_id: str) -> Group:
        count = await self._store.count_memberships(group_id)
        return await self._store.update_group(group_id, {"member_count": count})

    def _log_membership(self, group_id: str, user_id: str, change: str) -> None:
        logger.info(
            "Membership %s: user %s in group %s",
            change,
            user_id,
            group_id,
            extra={
                "event": LogEvent.MEMBERSHIP_CHANGED,
                "component": Component.TM,
                "group_id": group_id,
                "user_id": user_id,
                "change": change,
            },
        )

    async def list_members(self, caller: Caller, group_id: str) -> list[Membership]:
        await self._readable_group(caller, group_id)
        return await self._store.list_memberships(group_id)

    async def add_member(
        self,
        caller: Caller,
        group_id: str,
        *,
        user_id: str | None = None,
        email: str | None = None,
        role: GroupRole = GroupRole.MEMBER,
    ) -> Membership:
        """Add a user (by id or email) to a group.

        Raises:
            ValidationError: Neither user_id nor email given
            NotFoundError: Group or user absent
            ConflictError: User is already a member
        """
        await self._manageable_group(caller, group_id)
        if user_id:
            user = await self._store.get_user(user_id)
        elif email:
            user = await self._store.get_user_by_email(email)
        else:
            raise ValidationError("user_id or email is required")
        if user is None:
            raise NotFoundError("User not found")

        try:
            membership = await self._store.add_membership(
                Membership(user_id=user.id, group_id=group_id, role=GroupRole(role))
            )
        except RecordExistsError:
            raise ConflictError("User is already a member of this group") from None
        await self._recount(group_id)
        self._log_membership(group_id, user.id, "added")
        return membership

    async def set_member_role(
        self, caller: Caller, group_id: str, user_id: str, role: GroupRole
    ) -> Membership:
        await self._manageable_group(caller, group_id)
        membership = await self._store.set_membership_role(user_id, group_id, GroupRole(role))
        self._log_membership(group_id, user_id, f"role={role}")
        return membership

    async def remove_member(self, caller: Caller, group_id: str, user_id: str) -> None:
        """Remove a member; members may remove themselves."""
        if caller.user_id == user_id:
            await self._readable_group(caller, group_id)
        else:
            await self._manageable_group(caller, group_id)
        if not await self._store.delete_membership(user_id, group_id):
            raise NotFoundError("Membership not found")
        await self._recount(group_id)
        self._log_membership(group_id, user_id, "removed")
