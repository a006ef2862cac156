"""FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from transit_feed.config import Settings, get_settings
from transit_feed.database import StoreRegistry
from transit_feed.errors import FeedError
from transit_feed.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from transit_feed.routers.feeds import router as feeds_router
from transit_feed.routers.schedule import router as schedule_router
from transit_feed.services.gtfs_static.loader import FeedLoader
from transit_feed.services.gtfs_static.progress import ProgressTracker
from transit_feed.services.schedule.queries import ScheduleQueries

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging(app.state.settings)
    settings: Settings = app.state.settings
    logger.info("Starting Transit Feed Explorer API", cache_dir=str(settings.cache_dir))

    yield

    logger.info("Shutting down Transit Feed Explorer API")
    await app.state.registry.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Load static GTFS feeds into cached SQLite stores and query routes, "
            "trips, stops and service calendars."
        ),
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    registry = StoreRegistry()
    progress = ProgressTracker()
    app.state.settings = settings
    app.state.registry = registry
    app.state.progress = progress
    app.state.loader = FeedLoader(registry, settings=settings, progress=progress)
    app.state.queries = ScheduleQueries(
        registry,
        timeout_sec=settings.query_timeout_sec,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        bind_request_context(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        clear_request_context()
        return response

    # Include routers
    app.include_router(feeds_router)
    app.include_router(schedule_router)

    # Health endpoint
    @app.get("/health", tags=["meta"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint returning application status."""
        missing_env = settings.missing_required_env()
        handle = registry.current
        store_healthy = await registry.check()

        status = (
            "unhealthy"
            if missing_env
            else "degraded"
            if handle is not None and not store_healthy
            else "healthy"
        )

        issues: list[str] = []
        if missing_env:
            issues.append("Missing required environment variables: " + ", ".join(missing_env))
        if handle is not None and not store_healthy:
            issues.append("Current feed store is not answering queries")

        current = progress.current
        return {
            "service": settings.app_name,
            "status": status,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "store": store_healthy,
                "feed": {
                    "loaded": handle is not None,
                    "fingerprint": handle.fingerprint if handle else None,
                    "loadInProgress": app.state.loader.busy,
                    "lastStep": current.step,
                },
            },
            "issues": issues,
        }

    # Feed errors carry their own status code and stable message
    @app.exception_handler(FeedError)
    async def feed_error_handler(request: Request, exc: FeedError) -> JSONResponse:
        logger.warning(
            "Request failed",
            path=request.url.path,
            code=exc.code,
            step=exc.step,
            error=exc.user_message,
        )
        content: dict[str, Any] = {"error": exc.code, "message": exc.user_message}
        if settings.is_development:
            detail: dict[str, Any] = {"exception": repr(exc)}
            if exc.step:
                detail["step"] = exc.step
            if exc.__cause__ is not None:
                detail["cause"] = repr(exc.__cause__)
            content["detail"] = detail
        return JSONResponse(status_code=exc.status_code, content=content)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


app = create_app()
