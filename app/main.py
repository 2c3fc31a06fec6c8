"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.router import api_router
from app.config import settings
from app.core.exceptions import AppException
from app.core.firebase import close_firebase, initialize_firebase
from app.core.redis_client import check_redis_connection, close_redis_connection
from app.database import check_database_connection, engine
from app.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.middleware.logging import LoggingMiddleware, configure_logging

configure_logging()
logger = structlog.get_logger()

EXCEPTION_HANDLERS = {
    AppException: app_exception_handler,
    StarletteHTTPException: http_exception_handler,
    RequestValidationError: validation_exception_handler,
    Exception: general_exception_handler,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Check collaborators on startup and release them on shutdown.

    Only the database is required. Without Firebase notifications are
    recorded as failed; without Redis projections are read from the database.
    """
    logger.info("application_startup", environment=settings.environment)

    try:
        initialize_firebase(
            settings.firebase_credentials_path,
            settings.firebase_config_json,
            http_timeout=settings.notification_timeout_seconds,
        )
        logger.info("firebase_initialized")
    except Exception as e:
        logger.warning("firebase_initialization_failed", error=str(e), push_notifications=False)

    if not await check_database_connection():
        logger.error("database_connection_failed")

    if not await check_redis_connection():
        logger.warning("redis_connection_failed", appointment_cache=False)

    yield

    logger.info("application_shutdown")
    await engine.dispose()
    close_redis_connection()
    close_firebase()


def create_app() -> FastAPI:
    """Build the API with its middleware, error handlers and metrics."""
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Booking and case management for one-on-one consulting sessions",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(LoggingMiddleware)

    for exception_class, handler in EXCEPTION_HANDLERS.items():
        application.add_exception_handler(exception_class, handler)  # type: ignore[arg-type]

    application.include_router(api_router, prefix=settings.api_v1_prefix)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    ).instrument(application).expose(application, endpoint="/metrics", include_in_schema=False)

    @application.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "docs": "/docs",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
