"""
FastAPI application entry point.
Configures middleware, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy import text

from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, get_logger
from app.core.middleware import SecurityHeadersMiddleware
from app.db.session import close_db, get_session_factory, init_db
from app.modules.history.container import build_services
from app.modules.history.router import router as history_router

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the database (SQL backend only) and builds the history service
    graph for this application instance.
    """
    settings: Settings = app.state.settings
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
        store_backend=settings.history_store_backend,
    )

    session_factory = None
    if settings.history_store_backend == "sql":
        session_factory = await init_db(settings)
        logger.info("database_initialized")

    app.state.history_services = build_services(settings, session_factory)
    logger.info(
        "history_services_ready",
        active_key_version=app.state.history_services.encryption.active_key_version,
    )

    yield

    await close_db()
    logger.info("application_shutdown_complete")


def create_application(settings: Settings | None = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with all middleware,
    routers, and settings applied.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ==========================================================================
    # Middleware Configuration
    # ==========================================================================

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["Content-Type", "Accept", "Origin", settings.identity_header],
        )

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    # Gzip compression for responses (CSV/JSON exports)
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # ==========================================================================
    # Router Registration
    # ==========================================================================

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        if settings.history_store_backend == "sql":
            try:
                async with get_session_factory()() as session:
                    await session.execute(text("SELECT 1"))
                checks["db"] = "ok"
            except Exception:
                checks["db"] = "unavailable"
        else:
            checks["store"] = "memory"

        services = getattr(app.state, "history_services", None)
        if services is not None:
            health = services.encryption.check_key_health(settings.key_rotation_days)
            checks["keys"] = health.status

        degraded = checks.get("db") == "unavailable" or checks.get("keys") == "critical"
        return {
            "status": "degraded" if degraded else "healthy",
            "version": settings.version,
            "checks": checks,
        }

    app.include_router(
        history_router,
        prefix=f"{settings.api_v1_prefix}/history",
        tags=["Customer History"],
    )

    if settings.metrics_enabled:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    return app


# Application instance
app = create_application()
