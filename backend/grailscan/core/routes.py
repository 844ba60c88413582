"""Application routes."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import structlog
from fastapi import APIRouter, FastAPI
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from grailscan.routes.general import create_general_router
from grailscan.routes.scanner import create_scanner_router
from grailscan.routes.vision import create_vision_router

logger = structlog.get_logger("grailscan.routes")


def create_app_router(
    app: FastAPI | None = None,
    get_db_session: Callable[[], AsyncIterator[SQLModelAsyncSession]] | None = None,
) -> APIRouter:
    """Create and configure main application router.

    Args:
        app: FastAPI app instance
        get_db_session: Dependency function for database sessions

    Returns:
        Configured APIRouter instance
    """
    router = APIRouter()

    # Scanner and vision routes read their services from app.state
    router.include_router(create_scanner_router(), tags=["scanner"])
    router.include_router(create_vision_router(), tags=["vision"])
    logger.debug("Included scanner and vision routers in app_router")

    if app and get_db_session:
        router.include_router(create_general_router(get_db_session), tags=["general"])
        logger.debug("Included general router in app_router")

    return router
