"""Application entry point for GrailScan."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from grailscan.core.config import get_settings
from grailscan.core.database import (
    create_database_engine,
    create_session_factory,
    init_database,
)
from grailscan.core.dependencies import build_scanner_services
from grailscan.core.logging import setup_logging
from grailscan.core.metrics import setup_metrics
from grailscan.core.middleware import TracingMiddleware
from grailscan.core.routes import create_app_router
from grailscan.routes.general import APP_VERSION

logger = structlog.get_logger("grailscan.app")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "Starting GrailScan application",
        version=APP_VERSION,
        env=settings.env,
        host=settings.host_bind_address,
        port=settings.host_port,
    )

    # Engine and session factory are created in create_app()
    await init_database(app.state.engine)
    logger.info("Database schema ensured")

    services = app.state.scanner
    logger.info(
        "Scanner services ready",
        catalog_configured=services.catalog.configured,
        vision_configured=services.vision_service.configured,
        vision_first=services.config.vision_first_mode,
    )

    yield

    logger.info("Shutting down GrailScan application")
    await services.aclose()
    if hasattr(app.state, "engine") and app.state.engine:
        await app.state.engine.dispose()
        logger.info("Database engine disposed")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    # Setup logging first (use settings)
    setup_logging(debug=settings.is_debug, logs_dir=settings.logs_dir, level=settings.log_level)

    app = FastAPI(
        title="GrailScan",
        description="Comic cover identification and matching",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    engine = create_database_engine(settings.database_file, echo=False)
    async_session_factory = create_session_factory(engine)

    app.state.engine = engine
    app.state.async_session_factory = async_session_factory
    app.state.scanner = build_scanner_services(settings, async_session_factory)
    logger.info("Database engine and scanner services created")

    async def get_db_session() -> AsyncIterator[SQLModelAsyncSession]:
        """FastAPI dependency for database sessions."""
        async with async_session_factory() as session:
            yield session

    # Add tracing middleware (before other middleware to capture all requests)
    app.add_middleware(TracingMiddleware)

    setup_metrics(app, APP_VERSION)

    app.include_router(create_app_router(app, get_db_session))

    return app


def main() -> None:
    """Main entry point."""
    from grailscan.core.config import reload_settings

    current_settings = reload_settings()
    app = create_app()

    import uvicorn

    logger.info(
        "Starting uvicorn server",
        host=current_settings.host_bind_address,
        port=current_settings.host_port,
    )

    uvicorn.run(
        app,
        host=current_settings.host_bind_address,
        port=current_settings.host_port,
        log_config=None,  # We use structlog
        reload=False,
    )


if __name__ == "__main__":
    main()
