"""Tenant models: users, groups, memberships, platform settings."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from wsplane.core.models.workspace import utc_now


class User(SQLModel, table=True):
    """Platform user, registered lazily from the caller identity."""

    __tablename__ = "users"

    id: str = Field(primary_key=True)
    email: str = Field(unique=True, index=True, max_length=320)
    display_name: str | None = Field(default=None, max_length=255)
    is_platform_admin: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True))
    )


class Group(SQLModel, table=True):
    """Tenant group bound 1:1 to a cluster namespace."""

    __tablename__ = "groups"

    id: str = Field(primary_key=True)  # grp_<ULID>
    name: str = Field(unique=True, max_length=63)
    display_name: str = Field(max_length=255)
    description: str | None = Field(default=None, max_length=500)
    namespace: str = Field(unique=True, index=True, max_length=63)
    quota: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    # Cached; recomputed from memberships on every membership change
    member_count: int = Field(default=0)
    version: int = Field(default=1)

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Membership(SQLModel, table=True):
    """Group role of a user. Single source of truth for group membership."""

    __tablename__ = "memberships"

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    group_id: str = Field(foreign_key="groups.id", primary_key=True, index=True)
    role: str = Field(default="member")  # GroupRole value
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True))
    )


class PlatformSetting(SQLModel, table=True):
    """Key/value platform setting (e.g. default_workspace_image)."""

    __tablename__ = "platform_settings"

    key: str = Field(primary_key=True, max_length=128)
    value: str = Field(max_length=1024)
