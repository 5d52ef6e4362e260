"""
Main FastAPI application for Herald.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from herald.config import settings
from herald.middleware.correlation import CorrelationIdMiddleware
from herald.database import init_db, close_db, AsyncSessionLocal
from herald.utils.errors import ErrorCode, create_error_response
from herald.utils.logger import setup_logger
from herald.clients import create_transport
from herald.stores import create_store
from herald.services import CachedPreferenceStore, NotificationService, SqlPreferenceStore
from herald.api import notifications, status


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    # Startup
    setup_logger()
    logger.info(f"Starting {settings.app_name} {settings.app_version}...")

    await init_db()
    logger.info("Database initialized")

    store = create_store(settings)
    transport = create_transport(settings.transport)
    if await transport.test_connection():
        logger.info(f"✓ {transport.name} transport reachable")
    else:
        logger.warning(f"✗ {transport.name} transport connection test failed")

    preference_store = CachedPreferenceStore(SqlPreferenceStore(AsyncSessionLocal))
    notification_service = NotificationService(
        settings.delivery,
        store,
        transport,
        preference_store=preference_store,
    )
    await notification_service.start()

    app.state.session_factory = AsyncSessionLocal
    app.state.store = store
    app.state.notification_service = notification_service
    logger.info(f"{settings.app_name} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await notification_service.stop()
    await store.close()
    await close_db()
    logger.info(f"{settings.app_name} shut down complete")


def create_app() -> FastAPI:
    """Build the application; tests construct it without the lifespan."""
    application = FastAPI(
        title=settings.app_name,
        description="Notification delivery with priority batching, rate limiting and circuit breaking",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Correlation ID middleware (first, to capture all requests)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            f"http://localhost:{settings.port}",
            f"http://127.0.0.1:{settings.port}",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        logger.warning(f"Invalid request to {request.url.path}: {message}")
        return JSONResponse(
            status_code=400,
            content={"detail": create_error_response(ErrorCode.VALIDATION_ERROR, message, 400)},
        )

    application.include_router(status.router)
    application.include_router(notifications.router)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("herald.main:app", host=settings.host, port=settings.port, reload=settings.debug)
