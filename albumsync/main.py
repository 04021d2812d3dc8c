"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from albumsync.api.health import router as health_router
from albumsync.api.mappings import router as mappings_router
from albumsync.api.sync import router as sync_router
from albumsync.clients.amazon import AmazonPhotosClient
from albumsync.clients.icloud import ICloudClient
from albumsync.config import Settings
from albumsync.database import create_engine
from albumsync.exceptions import StorageError
from albumsync.services.mapping_store import MappingStore
from albumsync.services.notification_service import NotificationService
from albumsync.services.retry import RetryPolicy
from albumsync.services.scheduler import SyncScheduler
from albumsync.services.sync_engine import SyncEngine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _configure_logging(settings: Settings) -> None:
    """Configure application logging."""
    level = logging.DEBUG if settings.debug else _LOG_LEVELS[settings.log_level]
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    _configure_logging(settings)
    logger.info(
        "Starting albumsync (album=%r, deletions=%s, poll=%ds)",
        settings.amazon_album_name,
        settings.deletion_policy,
        settings.poll_interval_seconds,
    )

    try:
        db_engine, session_factory = create_engine(settings)
        store = MappingStore(session_factory, db_engine)
        await store.init_schema()
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        target = AmazonPhotosClient.from_file(
            settings.amazon_cookies_path,
            auto_refresh=settings.amazon_auto_refresh_cookies,
        )
    except (OSError, ValueError) as exc:
        logger.critical(
            "Failed to load Amazon cookies from %s: %s", settings.amazon_cookies_path, exc
        )
        await db_engine.dispose()
        raise

    source = ICloudClient(
        settings.icloud_album_token,
        retry_policy=RetryPolicy(max_retries=settings.icloud_download_max_retries),
    )
    sync_engine = SyncEngine(
        source,
        target,
        store,
        collection_name=settings.amazon_album_name,
        deletion_policy=settings.deletion_policy,
        upload_delay_ms=settings.upload_delay_ms,
    )
    notifications = NotificationService(
        webhook_url=settings.alert_webhook_url,
        pushover_token=settings.pushover_token,
        pushover_user=settings.pushover_user,
        throttle_seconds=settings.alert_throttle_seconds,
    )
    scheduler = SyncScheduler(
        sync_engine,
        poll_interval=settings.poll_interval,
        target=target,
        refresh_interval=(
            settings.cookie_refresh_interval if settings.amazon_auto_refresh_cookies else None
        ),
        notifications=notifications,
    )

    app.state.engine = db_engine
    app.state.session_factory = session_factory
    app.state.store = store
    app.state.sync_engine = sync_engine
    app.state.scheduler = scheduler
    app.state.notifications = notifications

    await scheduler.authenticate()
    app.state.ready = True
    scheduler.start()

    yield

    await scheduler.stop()
    for task in list(app.state.background_tasks):
        task.cancel()

    try:
        await sync_engine.close()
        await notifications.aclose()
    except Exception as exc:
        logger.error("Error closing HTTP clients: %s", exc, exc_info=True)

    try:
        await db_engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("albumsync stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="albumsync",
        description="Mirror an iCloud shared album into an Amazon Photos album",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.started_monotonic = time.monotonic()
    app.state.ready = False
    app.state.background_tasks = set()

    app.include_router(health_router)
    app.include_router(mappings_router)
    app.include_router(sync_router)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error(
            "StorageError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    return app


def main() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings = Settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
