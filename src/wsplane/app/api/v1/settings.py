"""Platform settings API endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from wsplane.app.api.v1.dependencies import CallerDep, LifecycleDep

router = APIRouter(prefix="/settings", tags=["settings"])


class DefaultImageBody(BaseModel):
    image: str = Field(min_length=1, max_length=512)


class DefaultImageResponse(BaseModel):
    image: str


@router.get("/default-image", response_model=DefaultImageResponse)
async def get_default_image(caller: CallerDep, lifecycle: LifecycleDep):
    return DefaultImageResponse(image=await lifecycle.default_image())


@router.put("/default-image", response_model=DefaultImageResponse)
async def set_default_image(body: DefaultImageBody, caller: CallerDep, lifecycle: LifecycleDep):
    """Image for workspaces created without one. Platform admins only."""
    image = await lifecycle.set_default_image(caller, body.image)
    return DefaultImageResponse(image=image)
