"""SQL implementation of RecordStore (SQLModel tables, async SQLAlchemy)."""

from typing import Any

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wsplane.core.errors import NotFoundError, RecordExistsError, StaleRecordError
from wsplane.core.interfaces.store import Page, RecordStore
from wsplane.core.models import Group, Membership, PlatformSetting, User, Workspace, utc_now


class SqlRecordStore(RecordStore):
    """RecordStore on an async SQLAlchemy session factory.

    Every method opens its own short session; returned rows are detached
    (the factory must use expire_on_commit=False).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def _insert(self, row: Any, what: str) -> Any:
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise RecordExistsError(f"{what} already exists") from exc
            return row

    async def _versioned_update(
        self,
        model: type[Group] | type[Workspace],
        record_id: str,
        changes: dict[str, Any],
        expected_version: int | None,
    ) -> None:
        stmt = (
            update(model)
            .where(model.id == record_id)
            .values(**changes, version=model.version + 1, updated_at=utc_now())
        )
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount:
                return
            exists = await session.scalar(select(model.id).where(model.id == record_id))

        name = model.__name__
        if exists is None:
            raise NotFoundError(f"{name} not found")
        raise StaleRecordError(f"{name} {record_id} was modified concurrently")

    # =========================================================================
    # Users
    # =========================================================================

    async def create_user(self, user: User) -> User:
        return await self._insert(user, "User")

    async def get_user(self, user_id: str) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    # =========================================================================
    # Groups
    # =========================================================================

    async def create_group(self, group: Group) -> Group:
        return await self._insert(group, "Group")

    async def get_group(self, group_id: str) -> Group | None:
        async with self._session_factory() as session:
            return await session.get(Group, group_id)

    async def get_group_by_namespace(self, namespace: str) -> Group | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Group).where(Group.namespace == namespace))
            return result.scalar_one_or_none()

    async def list_groups(
        self, group_ids: list[str] | None, limit: int, offset: int
    ) -> Page[Group]:
        conditions = [] if group_ids is None else [Group.id.in_(group_ids)]
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Group).where(*conditions))
            result = await session.execute(
                select(Group).where(*conditions).order_by(Group.name).limit(limit).offset(offset)
            )
            return Page(
                items=list(result.scalars().all()), total=total or 0, limit=limit, offset=offset
            )

    async def update_group(
        self, group_id: str, changes: dict[str, Any], expected_version: int | None = None
    ) -> Group:
        await self._versioned_update(Group, group_id, changes, expected_version)
        group = await self.get_group(group_id)
        if group is None:
            raise NotFoundError("Group not found")
        return group

    async def delete_group(self, group_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(Group).where(Group.id == group_id))
            await session.commit()
            return bool(result.rowcount)

    # =========================================================================
    # Memberships
    # =========================================================================

    async def add_membership(self, membership: Membership) -> Membership:
        return await self._insert(membership, "Membership")

    async def get_membership(self, user_id: str, group_id: str) -> Membership | None:
        async with self._session_factory() as session:
            return await session.get(Membership, (user_id, group_id))

    async def list_memberships(self, group_id: str) -> list[Membership]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Membership)
                .where(Membership.group_id == group_id)
                .order_by(Membership.created_at, Membership.user_id)
            )
            return list(result.scalars().all())

    async def list_group_ids_for_user(self, user_id: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Membership.group_id)
                .where(Membership.user_id == user_id)
                .order_by(Membership.group_id)
            )
            return list(result.scalars().all())

    async def set_membership_role(self, user_id: str, group_id: str, role: str) -> Membership:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Membership)
                .where(Membership.user_id == user_id, Membership.group_id == group_id)
                .values(role=role)
            )
            await session.commit()
            if not result.rowcount:
                raise NotFoundError("Membership not found")
        membership = await self.get_membership(user_id, group_id)
        if membership is None:
            raise NotFoundError("Membership not found")
        return membership

    async def delete_membership(self, user_id: str, group_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Membership).where(
                    Membership.user_id == user_id, Membership.group_id == group_id
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def delete_memberships_for_group(self, group_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Membership).where(Membership.group_id == group_id)
            )
            await session.commit()
            return result.rowcount or 0

    async def count_memberships(self, group_id: str) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(Membership).where(Membership.group_id == group_id)
            )
            return count or 0

    # =========================================================================
    # Workspaces
    # =========================================================================

    async def create_workspace(self, workspace: Workspace) -> Workspace:
        return await self._insert(workspace, "Workspace")

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        async with self._session_factory() as session:
            return await session.get(Workspace, workspace_id)

    async def list_workspaces(
        self,
        *,
        group_ids: list[str] | None = None,
        owner_user_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[Workspace]:
        conditions = []
        visibility = []
        if group_ids is not None:
            visibility.append(Workspace.group_id.in_(group_ids))
        if owner_user_id is not None:
            visibility.append(Workspace.owner_user_id == owner_user_id)
        if visibility:
            conditions.append(or_(*visibility))
        if status is not None:
            conditions.append(Workspace.status == status)

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Workspace).where(*conditions)
            )
            result = await session.execute(
                select(Workspace)
                .where(*conditions)
                .order_by(Workspace.created_at.desc(), Workspace.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return Page(
                items=list(result.scalars().all()), total=total or 0, limit=limit, offset=offset
            )

    async def count_workspaces(self, group_id: str) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(Workspace).where(Workspace.group_id == group_id)
            )
            return count or 0

    async def update_workspace(
        self, workspace_id: str, changes: dict[str, Any], expected_version: int | None = None
    ) -> Workspace:
        await self._versioned_update(Workspace, workspace_id, changes, expected_version)
        workspace = await self.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError("Workspace not found")
        return workspace

    async def delete_workspace(self, workspace_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(Workspace).where(Workspace.id == workspace_id))
            await session.commit()
            return bool(result.rowcount)

    # =========================================================================
    # Platform settings
    # =========================================================================

    async def get_setting(self, key: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(PlatformSetting, key)
            return row.value if row else None

    async def put_setting(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            await session.merge(PlatformSetting(key=key, value=value))
            await session.commit()
