"""
Status API routes (liveness and readiness probes).
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text

from herald.utils.errors import StoreUnavailableError

router = APIRouter(prefix="/api/status", tags=["status"])


@router.get("/live")
async def liveness_check(request: Request):
    """
    Liveness probe - checks if the process is alive.
    Should return 200 if the app is running, regardless of dependencies.
    """
    return {"status": "alive", "version": request.app.version}


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness probe - checks the backing store, the database and the
    background processors. Returns 503 until all of them are available.
    """
    checks = {
        "notification_service": False,
        "backing_store": False,
        "background_tasks": False,
    }

    service = getattr(request.app.state, "notification_service", None)
    if service is not None:
        checks["notification_service"] = True

        try:
            checks["backing_store"] = await service.store.ping()
        except StoreUnavailableError as e:
            logger.warning(f"Readiness check - backing store failed: {e}")

        checks["background_tasks"] = bool(service.supervisor.task_names) and all(
            service.supervisor.is_running(name) for name in service.supervisor.task_names
        )

    session_factory = getattr(request.app.state, "session_factory", None)
    if session_factory is not None:
        checks["database"] = False
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
                checks["database"] = True
        except Exception as e:
            logger.warning(f"Readiness check - database failed: {e}")

    if all(checks.values()):
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
