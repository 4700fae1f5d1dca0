"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wsplane import __version__
from wsplane.app.api.v1 import groups_router, settings_router, workspaces_router
from wsplane.app.config import get_settings
from wsplane.app.logging import setup_logging
from wsplane.app.metrics import get_metrics_response
from wsplane.app.middleware.logging import LoggingMiddleware
from wsplane.control import build_control_plane
from wsplane.core.errors import NotFoundError, WsPlaneError
from wsplane.core.logging_schema import LogEvent
from wsplane.infra import (
    KubernetesCluster,
    SqlRecordStore,
    close_db,
    get_session_factory,
    init_db,
    load_api_client,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()

    await init_db()
    store = SqlRecordStore(get_session_factory())
    api_client = load_api_client(settings.kubernetes)
    cluster = KubernetesCluster(settings.kubernetes, settings.proxy, api_client)
    control_plane = build_control_plane(store, cluster, settings)

    app.state.store = store
    app.state.cluster = cluster
    app.state.control_plane = control_plane

    logger.info(
        "Control plane ready",
        extra={"event": LogEvent.APP_STARTED, "version": __version__},
    )

    yield

    logger.info("Control plane stopping", extra={"event": LogEvent.APP_STOPPED})
    await control_plane.shutdown()
    api_client.close()
    await close_db()


app = FastAPI(title="wsplane", version=__version__, lifespan=lifespan)
app.add_middleware(LoggingMiddleware)
app.include_router(workspaces_router, prefix="/api/v1")
app.include_router(groups_router, prefix="/api/v1")
app.include_router(settings_router, prefix="/api/v1")


@app.exception_handler(WsPlaneError)
async def wsplane_error_handler(request: Request, exc: WsPlaneError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


async def _dependency_status(ping: Callable[[], Awaitable[None]]) -> str:
    try:
        await ping()
    except Exception as exc:
        return f"error: {exc}"
    return "connected"


async def _services(request: Request) -> dict[str, str]:
    state = request.app.state
    results = await asyncio.gather(
        _dependency_status(state.store.ping),
        _dependency_status(state.cluster.ping),
    )
    return dict(zip(("postgres", "kubernetes"), results))


@app.get("/health")
async def health(request: Request):
    """Liveness plus reachability of the record store and the cluster API."""
    services = await _services(request)
    healthy = all(result == "connected" for result in services.values())
    return {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "services": services,
    }


@app.get("/health/live")
async def health_live():
    """Process is serving; dependencies are not checked."""
    return {"status": "ok"}


@app.get("/health/ready")
async def health_ready(request: Request) -> JSONResponse:
    """503 until both the record store and the cluster API answer."""
    services = await _services(request)
    ready = all(result == "connected" for result in services.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "services": services},
    )


@app.get("/metrics", include_in_schema=False)
async def metrics():
    if not get_settings().metrics.enabled:
        raise NotFoundError("Metrics are disabled")
    return get_metrics_response()
