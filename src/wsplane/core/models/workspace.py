"""Workspace record model."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Index, String
from sqlmodel import Field, SQLModel
from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Workspace(SQLModel, table=True):
    """Persisted workspace record.

    version is bumped on every update and is the compare-and-swap token for
    version-checked updates.
    """

    __tablename__ = "workspaces"

    id: str = Field(primary_key=True)  # ws_<ULID>
    owner_user_id: str = Field(foreign_key="users.id", index=True)
    group_id: str = Field(foreign_key="groups.id", index=True)

    name: str = Field(max_length=255)
    description: str | None = Field(default=None, max_length=500)
    status: str = Field(default="STOPPED", sa_type=String)  # WorkspaceStatus value
    image: str = Field(max_length=512)
    resources: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    replicas: int = Field(default=0)
    credential: str = Field(max_length=128)
    url: str | None = Field(default=None, max_length=1024)
    usage: dict | None = Field(default=None, sa_column=Column(JSON))
    version: int = Field(default=1)

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    last_accessed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )

    __table_args__ = (
        # Group listing filtered by status
        Index("idx_workspaces_group_status", "group_id", "status"),
    )
