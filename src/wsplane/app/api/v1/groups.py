"""Group and membership API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field, model_validator

from wsplane.app.api.v1.dependencies import CallerDep, TenantsDep
from wsplane.core.domain import GroupRole, ResourceQuota

router = APIRouter(prefix="/groups", tags=["groups"])


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateGroupBody(BaseModel):
    name: str = Field(min_length=1, max_length=63)
    display_name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    namespace: str | None = Field(default=None, max_length=63)
    quota: ResourceQuota | None = None


class UpdateGroupBody(BaseModel):
    display_name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    quota: ResourceQuota | None = None


class AddMemberBody(BaseModel):
    """Add a member by user id or by email (exactly one)."""

    user_id: str | None = None
    email: str | None = None
    role: GroupRole = GroupRole.MEMBER

    @model_validator(mode="after")
    def _one_identifier(self) -> "AddMemberBody":
        if bool(self.user_id) == bool(self.email):
            raise ValueError("Exactly one of user_id or email is required")
        return self


class SetRoleBody(BaseModel):
    role: GroupRole


class GroupResponse(BaseModel):
    id: str
    name: str
    display_name: str | None
    description: str | None
    namespace: str
    quota: dict
    member_count: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class GroupDetailResponse(GroupResponse):
    usage: dict | None = None


class GroupListResponse(BaseModel):
    items: list[GroupResponse]
    total: int
    limit: int
    offset: int


class MemberResponse(BaseModel):
    user_id: str
    group_id: str
    role: str
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Groups
# =============================================================================


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(body: CreateGroupBody, caller: CallerDep, tenants: TenantsDep):
    """Create a group with its namespace and quota. Platform admins only."""
    group = await tenants.create_group(
        caller,
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        namespace=body.namespace,
        quota=body.quota,
    )
    return GroupResponse.model_validate(group)


@router.get("", response_model=GroupListResponse)
async def list_groups(
    caller: CallerDep,
    tenants: TenantsDep,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    page = await tenants.list_groups(caller, limit=limit, offset=offset)
    return GroupListResponse(
        items=[GroupResponse.model_validate(group) for group in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/{group_id}", response_model=GroupDetailResponse)
async def get_group(group_id: str, caller: CallerDep, tenants: TenantsDep):
    detail = await tenants.get_group(caller, group_id)
    response = GroupDetailResponse.model_validate(detail.group)
    response.usage = detail.usage
    return response


@router.patch("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str, body: UpdateGroupBody, caller: CallerDep, tenants: TenantsDep
):
    group = await tenants.update_group(
        caller,
        group_id,
        display_name=body.display_name,
        description=body.description,
        quota=body.quota,
    )
    return GroupResponse.model_validate(group)


@router.delete("/{group_id}", status_code=204)
async def delete_group(group_id: str, caller: CallerDep, tenants: TenantsDep) -> Response:
    """Delete an empty group and its namespace. Platform admins only."""
    await tenants.delete_group(caller, group_id)
    return Response(status_code=204)


# =============================================================================
# Members
# =============================================================================


@router.get("/{group_id}/members", response_model=list[MemberResponse])
async def list_members(group_id: str, caller: CallerDep, tenants: TenantsDep):
    memberships = await tenants.list_members(caller, group_id)
    return [MemberResponse.model_validate(m) for m in memberships]


@router.post("/{group_id}/members", response_model=MemberResponse, status_code=201)
async def add_member(group_id: str, body: AddMemberBody, caller: CallerDep, tenants: TenantsDep):
    membership = await tenants.add_member(
        caller, group_id, user_id=body.user_id, email=body.email, role=body.role
    )
    return MemberResponse.model_validate(membership)


@router.patch("/{group_id}/members/{user_id}", response_model=MemberResponse)
async def set_member_role(
    group_id: str, user_id: str, body: SetRoleBody, caller: CallerDep, tenants: TenantsDep
):
    membership = await tenants.set_member_role(caller, group_id, user_id, body.role)
    return MemberResponse.model_validate(membership)


@router.delete("/{group_id}/members/{user_id}", status_code=204)
async def remove_member(
    group_id: str, user_id: str, caller: CallerDep, tenants: TenantsDep
) -> Response:
    await tenants.remove_member(caller, group_id, user_id)
    return Response(status_code=204)
