"""Scanner routes: trigger decision, vision match, identification, scan and corrections."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import AliasChoices, Field

from grailscan.core.dependencies import (
    get_correction_cache,
    get_matching_settings,
    get_orchestrator,
    get_scan_pipeline,
)
from grailscan.core.matching.config import MatchingConfig
from grailscan.core.matching.models import (
    CamelModel,
    Candidate,
    IdentificationOutcome,
    TriggerDecision,
    TriggerReason,
    VisionMatchResult,
)
from grailscan.core.matching.trigger import decide_trigger
from grailscan.core.scanner.corrections import CorrectionCache
from grailscan.core.scanner.orchestrator import VisionMatchOrchestrator
from grailscan.core.scanner.pipeline import ScanOutcome, ScanPipeline
from grailscan.core.utils import normalize_input_text

logger = structlog.get_logger("grailscan.routes.scanner")

IMAGE_ALIASES = AliasChoices("image", "scanImageBase64")


class TriggerRequest(CamelModel):
    ocr_confidence: float = Field(ge=0.0, le=1.0)
    candidates: list[Candidate] = Field(default_factory=list)
    user_triggered: bool = False
    ocr_extracted_title: str | None = None
    ocr_extracted_issue: str | None = None
    has_cache_hit: bool = False
    ocr_text: str | None = None  # looked up in the correction cache when given


class VisionMatchRouteRequest(CamelModel):
    image: str = Field(default="", validation_alias=IMAGE_ALIASES)
    candidates: list[Candidate] = Field(default_factory=list)
    trigger_reason: TriggerReason = Field(
        default=TriggerReason.AUTO_LOW_CONFIDENCE,
        validation_alias=AliasChoices("triggerReason", "triggeredBy", "trigger_reason"),
    )
    scan_event_id: str | None = None
    user_id: str | None = None


class IdentifyRequest(CamelModel):
    image: str = Field(default="", validation_alias=IMAGE_ALIASES)
    scan_event_id: str | None = None
    user_id: str | None = None


class ScanRequest(CamelModel):
    image: str = Field(default="", validation_alias=IMAGE_ALIASES)
    ocr_text: str | None = None
    ocr_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    candidates: list[Candidate] = Field(default_factory=list)
    user_triggered: bool = False
    ocr_extracted_title: str | None = None
    ocr_extracted_issue: str | None = None
    scan_event_id: str | None = None
    user_id: str | None = None


class ConfirmRequest(CamelModel):
    ocr_text: str
    pick: Candidate
    vision_confidence: float = Field(ge=0.0, le=1.0)
    user_id: str | None = None


class ConfirmResponse(CamelModel):
    saved: bool


class CorrectionResponse(CamelModel):
    normalized_input: str
    input_text: str
    selected_comicvine_id: int
    selected_volume_id: int | None = None
    selected_title: str
    selected_issue: str | None = None
    selected_year: int | None = None
    selected_publisher: str | None = None
    selected_cover_url: str | None = None
    original_confidence: int | None = None
    created_at: int


def _require_image(image: str) -> None:
    if not image:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing image")


def create_scanner_router() -> APIRouter:
    """Create the scanner router."""
    router = APIRouter(prefix="/api/scanner")

    @router.post("/trigger", response_model=TriggerDecision)
    async def trigger(
        body: TriggerRequest,
        config: MatchingConfig = Depends(get_matching_settings),
        cache: CorrectionCache = Depends(get_correction_cache),
    ) -> TriggerDecision:
        """Decide whether vision should run for a scan."""
        has_cache_hit = body.has_cache_hit
        if not has_cache_hit and normalize_input_text(body.ocr_text):
            has_cache_hit = await cache.lookup(normalize_input_text(body.ocr_text))

        return decide_trigger(
            body.ocr_confidence,
            body.candidates,
            user_triggered=body.user_triggered,
            ocr_extracted_title=body.ocr_extracted_title,
            ocr_extracted_issue=body.ocr_extracted_issue,
            has_cache_hit=has_cache_hit,
            config=config,
        )

    @router.post("/vision-match", response_model=VisionMatchResult | None)
    async def vision_match(
        body: VisionMatchRouteRequest,
        orchestrator: VisionMatchOrchestrator = Depends(get_orchestrator),
    ) -> VisionMatchResult | None:
        """Run vision matching; null means fall back to manual search."""
        _require_image(body.image)
        return await orchestrator.run_vision_match(
            body.image,
            body.candidates,
            body.trigger_reason,
            scan_event_id=body.scan_event_id,
            user_id=body.user_id,
        )

    @router.post("/identify", response_model=IdentificationOutcome | None)
    async def identify(
        body: IdentifyRequest,
        orchestrator: VisionMatchOrchestrator = Depends(get_orchestrator),
    ) -> IdentificationOutcome | None:
        """Identify a cover from the image alone and search the catalog."""
        _require_image(body.image)
        return await orchestrator.run_vision_identification(
            body.image,
            scan_event_id=body.scan_event_id,
            user_id=body.user_id,
        )

    @router.post("/scan", response_model=ScanOutcome)
    async def scan(
        body: ScanRequest,
        pipeline: ScanPipeline = Depends(get_scan_pipeline),
    ) -> ScanOutcome:
        """Run one scan through the cache, trigger policy and vision."""
        return await pipeline.process(
            body.image,
            body.ocr_text,
            body.ocr_confidence,
            body.candidates,
            user_triggered=body.user_triggered,
            ocr_extracted_title=body.ocr_extracted_title,
            ocr_extracted_issue=body.ocr_extracted_issue,
            scan_event_id=body.scan_event_id,
            user_id=body.user_id,
        )

    @router.post("/corrections", response_model=ConfirmResponse)
    async def confirm_correction(
        body: ConfirmRequest,
        pipeline: ScanPipeline = Depends(get_scan_pipeline),
    ) -> ConfirmResponse:
        """Record a user-confirmed pick."""
        saved = await pipeline.confirm(
            body.ocr_text,
            body.pick,
            body.vision_confidence,
            user_id=body.user_id,
        )
        return ConfirmResponse(saved=saved)

    @router.get("/corrections", response_model=CorrectionResponse)
    async def get_correction(
        text: str = Query(..., min_length=1),
        cache: CorrectionCache = Depends(get_correction_cache),
    ) -> CorrectionResponse:
        """Stored correction for OCR text."""
        correction = await cache.get(text)
        if correction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No correction stored")
        return CorrectionResponse.model_validate(correction, from_attributes=True)

    return router
