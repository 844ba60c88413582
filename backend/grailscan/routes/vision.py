"""Vision-match service endpoint."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from grailscan.core.dependencies import get_vision_service
from grailscan.core.matching.models import VisionMatchRequest, VisionMatchResult
from grailscan.core.vision.base import VisionAnalyzerError
from grailscan.core.vision.service import (
    UNAVAILABLE_ERROR,
    VisionMatchService,
    VisionNotConfiguredError,
)

logger = structlog.get_logger("grailscan.routes.vision")


def create_vision_router() -> APIRouter:
    """Create the vision-match router.

    Failures of the model call come back as a 200 with an ``error`` field so the
    scanner can keep going with its OCR candidates.
    """
    router = APIRouter(prefix="/api")

    @router.post("/vision-match")
    async def vision_match(
        body: VisionMatchRequest,
        service: VisionMatchService = Depends(get_vision_service),
    ) -> JSONResponse:
        if not body.image:
            return JSONResponse(
                {"error": "Missing image"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        try:
            result = await service.analyze(body)
        except VisionNotConfiguredError as e:
            logger.error("Vision match requested without AI gateway", error=str(e))
            return JSONResponse(
                {"error": "Vision matching not configured"},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        except VisionAnalyzerError as e:
            logger.error("Vision match failed", error=str(e))
            result = VisionMatchResult(error=UNAVAILABLE_ERROR)

        return JSONResponse(result.model_dump(mode="json", by_alias=True))

    return router
