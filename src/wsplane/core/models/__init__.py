"""Database models for wsplane.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
Enum values are stored as strings; use core.domain enums in the service layer.
"""

from wsplane.core.models.tenant import Group, Membership, PlatformSetting, User
from wsplane.core.models.workspace import Workspace, generate_ulid, utc_now

__all__ = [
    "Group",
    "Membership",
    "PlatformSetting",
    "User",
    "Workspace",
    "generate_ulid",
    "utc_now",
]
