"""Workflow Automation Engine - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.v1.router import api_v1_router
from app.config import Settings, get_settings
from app.runtime import Runtime, build_runtime
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db.database import close_db, create_db_engine, create_session_factory, init_db
from db.sql import SqlRepository

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings: Settings = app.state.settings
    setup_logging(settings)

    db_engine = None
    if getattr(app.state, "runtime", None) is None:
        db_engine = create_db_engine(settings=settings)
        await init_db(db_engine)
        app.state.runtime = build_runtime(settings, SqlRepository(create_session_factory(db_engine)))
    runtime: Runtime = app.state.runtime

    await runtime.start()
    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        scheduler=runtime.scheduler.is_running,
        event_bus=runtime.event_bus is not None,
    )
    yield
    # Shutdown
    await runtime.stop()
    if db_engine is not None:
        await close_db(db_engine)
    logger.info("Application shut down")


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Passing a prebuilt runtime skips database setup (tests, embedding).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow automation engine: graph workflows, schedules and triggers.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Webhook-Signature", "X-Webhook-Timestamp"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Versioned API: all endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
