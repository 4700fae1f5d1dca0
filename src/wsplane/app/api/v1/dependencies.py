"""Request dependencies: caller identity and controller lookup.

Identity is verified upstream by the gateway and forwarded as trusted
headers; this service only reads them.
"""

from typing import Annotated

from fastapi import Depends, Header, Request

from wsplane.control import ControlPlane, LifecycleController, TenantManager
from wsplane.core.domain import Caller
from wsplane.core.errors import UnauthorizedError

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def get_control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane


ControlPlaneDep = Annotated[ControlPlane, Depends(get_control_plane)]


def get_lifecycle(control_plane: ControlPlaneDep) -> LifecycleController:
    return control_plane.lifecycle


def get_tenants(control_plane: ControlPlaneDep) -> TenantManager:
    return control_plane.tenants


async def get_caller(
    tenants: Annotated[TenantManager, Depends(get_tenants)],
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_admin: Annotated[str | None, Header()] = None,
) -> Caller:
    """Build the caller from gateway headers and register it on first sight."""
    if not x_user_id:
        raise UnauthorizedError()
    caller = Caller(
        user_id=x_user_id,
        email=x_user_email,
        is_platform_admin=(x_user_admin or "").lower() in _TRUE_VALUES,
    )
    await tenants.register_caller(caller)
    return caller


CallerDep = Annotated[Caller, Depends(get_caller)]
LifecycleDep = Annotated[LifecycleController, Depends(get_lifecycle)]
TenantsDep = Annotated[TenantManager, Depends(get_tenants)]
