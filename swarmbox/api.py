"""Read-only HTTP surface for sandbox observability."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from swarmbox.sandbox.exceptions import RuntimeUnavailableError
from swarmbox.sandbox.runtime import check_available

if TYPE_CHECKING:
    from swarmbox.engine.pool import ExecutionPool
    from swarmbox.sandbox.lifecycle import ContainerLifecycleManager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sandbox", tags=["sandbox"])


def _manager(request: Request) -> ContainerLifecycleManager:
    return request.app.state.manager


@router.get("/metrics")
async def metrics(request: Request):
    """Container metrics snapshot."""
    snapshot = await _manager(request).get_metrics()
    return snapshot.to_dict()


@router.get("/pool")
async def pool_metrics(request: Request):
    """Warm pool metrics; 404 when no pool is attached."""
    pool: ExecutionPool | None = request.app.state.pool
    if pool is None:
        return JSONResponse({"error": "No execution pool configured"}, status_code=404)
    return pool.get_metrics().to_dict()


@router.get("/events")
async def recent_events(request: Request, limit: int = 50):
    """Most recent lifecycle events, oldest first."""
    events = _manager(request).events.recent(max(1, min(limit, 500)))
    return {"events": [e.to_dict() for e in events]}


@router.get("/health")
async def health(request: Request):
    """Runtime reachability and active container count."""
    manager = _manager(request)
    try:
        await check_available(manager.runtime, manager.settings.runtime_binary)
    except RuntimeUnavailableError as exc:
        logger.warning("Sandbox health check failed: %s", exc)
        return JSONResponse({"status": "unavailable", "error": str(exc)}, status_code=503)
    return {
        "status": "healthy",
        "active_containers": len(manager.registry),
        "security_violations": manager.security.get_violation_count(),
    }


def create_app(
    manager: ContainerLifecycleManager,
    pool: ExecutionPool | None = None,
    *,
    manage_lifecycle: bool = False,
) -> FastAPI:
    """Build an app exposing *manager* (and optionally *pool*).

    With ``manage_lifecycle`` the app initializes the manager and starts the
    pool on startup, and tears both down on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await manager.initialize()
            if pool is not None:
                await pool.start()
        yield
        if manage_lifecycle:
            if pool is not None:
                await pool.stop()
            await manager.shutdown()

    app = FastAPI(title="swarmbox", description="Sandbox execution metrics", lifespan=lifespan)
    app.state.manager = manager
    app.state.pool = pool
    app.include_router(router)
    return app
