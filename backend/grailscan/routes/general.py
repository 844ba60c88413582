"""General API routes."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from grailscan.core.tracing import get_trace_id

logger = structlog.get_logger("grailscan.routes.general")

APP_VERSION = "0.1.0"


def create_general_router(
    get_db_session: Callable[[], AsyncIterator[SQLModelAsyncSession]],
) -> APIRouter:
    """Create the general router (root and health check)."""
    router = APIRouter(prefix="/api")

    @router.get("/")
    async def root() -> JSONResponse:
        """Root endpoint.

        All logs in this function automatically include the trace_id from context.
        """
        trace_id = get_trace_id()
        logger.info("Root endpoint accessed")
        return JSONResponse(
            {
                "message": "GrailScan",
                "version": APP_VERSION,
                "status": "ok",
                "trace_id": trace_id,
            }
        )

    @router.get("/health")
    async def health(session: SQLModelAsyncSession = Depends(get_db_session)) -> JSONResponse:
        """Health check endpoint; reports whether the database answers."""
        trace_id = get_trace_id()
        database = "ok"
        try:
            await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Health check database query failed", error=str(e))
            database = "unavailable"

        return JSONResponse(
            {
                "status": "healthy" if database == "ok" else "degraded",
                "database": database,
                "trace_id": trace_id,
            }
        )

    return router
