"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes for the controller pod.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from longhorn_manager.config.settings import settings
from longhorn_manager.utils.shutdown import shutdown_handler

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _controller(request: Request):
    return getattr(request.app.state, "controller", None)


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Ready once the replica and pod caches have completed their first list,
    and no longer ready once shutdown has begun.
    """
    controller = _controller(request)
    if (
        controller is None
        or not controller.synced
        or not controller.running
        or shutdown_handler.is_shutting_down()
    ):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "caches": "synced" if controller is not None and controller.synced else "syncing",
                "timestamp": _now(),
            },
        )

    return {
        "status": "ready",
        "caches": "synced",
        "queue_depth": len(controller.queue),
        "timestamp": _now(),
    }


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Indicates whether the controller has been started.
    """
    controller = _controller(request)
    if controller is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _now()},
        )

    return {
        "status": "started",
        "caches": "synced" if controller.synced else "syncing",
        "timestamp": _now(),
    }
