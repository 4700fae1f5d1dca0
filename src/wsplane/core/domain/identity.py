"""Caller identity passed from the gateway."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Caller:
    """Verified caller identity.

    Attributes:
        user_id: Stable user id from the identity provider
        email: Primary email, used as the secondary user key
        is_platform_admin: Platform-wide administrator flag
    """

    user_id: str
    email: str | None = None
    is_platform_admin: bool = False
