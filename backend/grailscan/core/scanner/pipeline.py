"""Single-scan pipeline: correction cache, trigger decision, then at most one vision run."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.matching.models import (
    CamelModel,
    Candidate,
    TriggerDecision,
    VisionMatchResult,
)
from grailscan.core.matching.trigger import decide_trigger
from grailscan.core.utils import normalize_input_text
from grailscan.db.models import ScanCorrection

from .corrections import CorrectionCache
from .orchestrator import VisionMatchOrchestrator, apply_vision_override

logger = structlog.get_logger("grailscan.scanner.pipeline")


class ScanOutcome(CamelModel):
    """What the scanner UI needs to present one scan for confirmation."""

    decision: TriggerDecision
    vision_result: VisionMatchResult | None = None
    suggested_pick: Candidate | None = None
    cache_hit: bool = False


def correction_to_candidate(correction: ScanCorrection) -> Candidate:
    """Present a stored correction as a pick."""
    return Candidate(
        id=correction.selected_comicvine_id,
        title=correction.selected_title,
        volume_name=correction.selected_title,
        volume_id=correction.selected_volume_id,
        issue=correction.selected_issue or "",
        year=correction.selected_year,
        publisher=correction.selected_publisher,
        cover_url=correction.selected_cover_url,
        thumb_url=correction.selected_cover_url,
        score=(correction.original_confidence or 0) / 100,
    )


class ScanPipeline:
    """Glue between the correction cache, trigger policy and vision orchestration."""

    def __init__(
        self,
        cache: CorrectionCache,
        orchestrator: VisionMatchOrchestrator,
        config: MatchingConfig | None = None,
    ) -> None:
        self.cache = cache
        self.orchestrator = orchestrator
        self.config = config or get_matching_config()

    async def process(
        self,
        image: str,
        ocr_text: str | None,
        ocr_confidence: float,
        candidates: Sequence[Candidate],
        user_triggered: bool = False,
        ocr_extracted_title: str | None = None,
        ocr_extracted_issue: str | None = None,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> ScanOutcome:
        normalized = normalize_input_text(ocr_text)
        cache_hit = bool(normalized) and await self.cache.lookup(normalized)

        decision = decide_trigger(
            ocr_confidence,
            candidates,
            user_triggered=user_triggered,
            ocr_extracted_title=ocr_extracted_title,
            ocr_extracted_issue=ocr_extracted_issue,
            has_cache_hit=cache_hit,
            config=self.config,
        )
        current_pick = candidates[0] if candidates else None

        if not decision.should or decision.reason is None:
            if cache_hit:
                correction = await self.cache.get(normalized)
                if correction is not None:
                    current_pick = correction_to_candidate(correction)
            logger.info("Scan resolved without vision", cache_hit=cache_hit)
            return ScanOutcome(decision=decision, suggested_pick=current_pick, cache_hit=cache_hit)

        vision_result = await self.orchestrator.run_vision_match(
            image,
            candidates,
            decision.reason,
            scan_event_id=scan_event_id,
            user_id=user_id,
        )
        if vision_result is not None:
            current_pick = apply_vision_override(current_pick, candidates, vision_result)

        logger.info(
            "Scan processed",
            reason=str(decision.reason),
            vision=vision_result is not None,
            override=bool(vision_result and vision_result.vision_override_applied),
        )
        return ScanOutcome(
            decision=decision,
            vision_result=vision_result,
            suggested_pick=current_pick,
            cache_hit=cache_hit,
        )

    async def confirm(
        self,
        ocr_text: str | None,
        pick: Candidate,
        vision_confidence: float,
        user_id: str | None = None,
    ) -> bool:
        """Record the pick the user confirmed; the only path to a cache write."""
        return await self.cache.save(ocr_text, pick, vision_confidence, user_id=user_id)
