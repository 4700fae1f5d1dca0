"""API v1 module."""

from wsplane.app.api.v1.groups import router as groups_router
from wsplane.app.api.v1.settings import router as settings_router
from wsplane.app.api.v1.workspaces import router as workspaces_router

__all__ = ["groups_router", "settings_router", "workspaces_router"]
