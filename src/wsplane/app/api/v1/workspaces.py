"""Workspace API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from wsplane.app.api.v1.dependencies import CallerDep, LifecycleDep
from wsplane.control.lifecycle import LOG_LINES_DEFAULT, LOG_LINES_MAX, CreateWorkspaceRequest
from wsplane.core.domain import ResourceSpec, ResourceTier

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateWorkspaceBody(BaseModel):
    """Create workspace request."""

    group_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    image: str | None = Field(default=None, max_length=512)
    tier: ResourceTier | None = None
    resources: ResourceSpec | None = None


class UpdateWorkspaceBody(BaseModel):
    """Update workspace request. Only descriptive fields are mutable."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=500)


class ActionBody(BaseModel):
    # Kept as str so unknown actions reach the controller's own validation
    type: str


class WorkspaceResponse(BaseModel):
    id: str
    owner_user_id: str
    group_id: str
    name: str
    description: str | None
    status: str
    image: str
    resources: dict
    replicas: int
    credential: str
    url: str | None
    usage: dict | None
    created_at: datetime
    updated_at: datetime
    last_accessed_at: datetime | None

    model_config = {"from_attributes": True}


class WorkspaceListResponse(BaseModel):
    items: list[WorkspaceResponse]
    total: int
    limit: int
    offset: int


class DeleteResponse(BaseModel):
    workspace_id: str
    record_deleted: bool
    warnings: list[str]


class ComponentHealthResponse(BaseModel):
    name: str
    healthy: bool
    detail: str


class HealthResponse(BaseModel):
    workspace_id: str
    healthy: bool
    components: list[ComponentHealthResponse]


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=WorkspaceResponse, status_code=201)
async def create_workspace(
    body: CreateWorkspaceBody, caller: CallerDep, lifecycle: LifecycleDep
) -> WorkspaceResponse:
    """Create a workspace (STOPPED, zero replicas) in a group."""
    workspace = await lifecycle.create(
        caller,
        CreateWorkspaceRequest(
            group_id=body.group_id,
            name=body.name,
            description=body.description,
            image=body.image,
            tier=body.tier,
            resources=body.resources,
        ),
    )
    return WorkspaceResponse.model_validate(workspace)


@router.get("", response_model=WorkspaceListResponse)
async def list_workspaces(
    caller: CallerDep,
    lifecycle: LifecycleDep,
    group_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> WorkspaceListResponse:
    page = await lifecycle.list_workspaces(
        caller, group_id=group_id, status=status, limit=limit, offset=offset
    )
    return WorkspaceListResponse(
        items=[WorkspaceResponse.model_validate(ws) for ws in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
async def get_workspace(
    workspace_id: str, caller: CallerDep, lifecycle: LifecycleDep
) -> WorkspaceResponse:
    return WorkspaceResponse.model_validate(await lifecycle.get(caller, workspace_id))


@router.patch("/{workspace_id}", response_model=WorkspaceResponse)
async def update_workspace(
    workspace_id: str, body: UpdateWorkspaceBody, caller: CallerDep, lifecycle: LifecycleDep
) -> WorkspaceResponse:
    workspace = await lifecycle.update(
        caller, workspace_id, name=body.name, description=body.description
    )
    return WorkspaceResponse.model_validate(workspace)


@router.delete("/{workspace_id}", response_model=DeleteResponse)
async def delete_workspace(
    workspace_id: str, caller: CallerDep, lifecycle: LifecycleDep
) -> DeleteResponse:
    """Delete a workspace.

    Cluster cleanup failures do not fail the request; they are listed in
    warnings.
    """
    outcome = await lifecycle.delete(caller, workspace_id)
    return DeleteResponse(
        workspace_id=outcome.workspace_id,
        record_deleted=outcome.record_deleted,
        warnings=outcome.warnings,
    )


@router.post("/{workspace_id}/actions", response_model=WorkspaceResponse)
async def perform_action(
    workspace_id: str, body: ActionBody, caller: CallerDep, lifecycle: LifecycleDep
) -> WorkspaceResponse:
    """Perform start, stop or restart."""
    workspace = await lifecycle.action(caller, workspace_id, body.type)
    return WorkspaceResponse.model_validate(workspace)


@router.post("/{workspace_id}/sync", response_model=WorkspaceResponse)
async def sync_workspace(
    workspace_id: str, caller: CallerDep, lifecycle: LifecycleDep
) -> WorkspaceResponse:
    """Force a reconciliation pass from live cluster state."""
    return WorkspaceResponse.model_validate(await lifecycle.sync(caller, workspace_id))


@router.get("/{workspace_id}/metrics")
async def workspace_metrics(workspace_id: str, caller: CallerDep, lifecycle: LifecycleDep) -> dict:
    return await lifecycle.metrics(caller, workspace_id)


@router.get("/{workspace_id}/logs", response_class=PlainTextResponse)
async def workspace_logs(
    workspace_id: str,
    caller: CallerDep,
    lifecycle: LifecycleDep,
    lines: int = Query(default=LOG_LINES_DEFAULT, ge=1, le=LOG_LINES_MAX),
) -> str:
    return await lifecycle.logs(caller, workspace_id, lines)


@router.get("/{workspace_id}/health", response_model=HealthResponse)
async def workspace_health(
    workspace_id: str, caller: CallerDep, lifecycle: LifecycleDep
) -> HealthResponse:
    report = await lifecycle.health(caller, workspace_id)
    return HealthResponse(
        workspace_id=workspace_id,
        healthy=all(item.healthy for item in report),
        components=[
            ComponentHealthResponse(name=item.name, healthy=item.healthy, detail=item.detail)
            for item in report
        ],
    )
