"""Vision match orchestration.

Chooses between comparison and identification mode, chains the
identification search after any identification answer, and normalizes every
outcome into a ``VisionMatchResult``. Transport failures are logged and become
``None`` so the caller can fall back to manual search; a quota-exhausted
answer is returned unchanged and never retried.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.matching.models import (
    Candidate,
    IdentificationOutcome,
    TriggerReason,
    VisionCandidate,
    VisionMatchResult,
)
from grailscan.core.vision.base import VisionAnalyzer, VisionAnalyzerError

from .identification import IdentificationSearch

logger = structlog.get_logger("grailscan.scanner.orchestrator")


class VisionMatchOrchestrator:
    """Runs at most one comparison call plus one identification call per scan."""

    def __init__(
        self,
        analyzer: VisionAnalyzer,
        identification_search: IdentificationSearch,
        config: MatchingConfig | None = None,
    ) -> None:
        self.analyzer = analyzer
        self.identification_search = identification_search
        self.config = config or get_matching_config()

    async def _search_identified(self, result: VisionMatchResult) -> list[Candidate]:
        return await self.identification_search.search_from_identification(
            result.identified_title,
            result.identified_issue,
            result.identified_publisher,
            result.identified_character,
        )

    def _reshape(self, result: VisionMatchResult, top: Candidate) -> VisionMatchResult:
        """Report an identification-derived pick as a high-confidence override."""
        return result.with_pick(top, self.config.identification_similarity_score).model_copy(
            update={"identification_mode": True}
        )

    async def run_vision_identification(
        self,
        image: str,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> IdentificationOutcome | None:
        """Identify the cover from the image alone, then search the catalog.

        Returns:
            Picks plus the identified fields; a ``limit_reached`` outcome with
            no picks when the quota is exhausted; None when the analyzer failed
            or named neither a title nor a character
        """
        try:
            result = await self.analyzer.identify(
                image,
                TriggerReason.AUTO_LOW_CONFIDENCE,
                scan_event_id=scan_event_id,
                user_id=user_id,
            )
        except VisionAnalyzerError as e:
            logger.error("Vision identification failed", error=str(e))
            return None

        if result.limit_reached:
            logger.info("Vision limit reached")
            return IdentificationOutcome(limit_reached=True)

        if not result.has_identification:
            logger.info("Vision identification named nothing", error=result.error)
            return None

        picks = await self._search_identified(result)
        logger.info(
            "Vision identification complete",
            title=result.identified_title,
            character=result.identified_character,
            confidence=result.identification_confidence,
            picks=len(picks),
        )
        return IdentificationOutcome(
            picks=picks,
            identified_title=result.identified_title,
            identified_issue=result.identified_issue,
            identified_publisher=result.identified_publisher,
            identified_character=result.identified_character,
            identification_confidence=result.identification_confidence,
        )

    async def run_vision_match(
        self,
        image: str,
        candidates: Sequence[Candidate],
        trigger_reason: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult | None:
        """Match the scanned cover against candidates, identifying it when they are weak.

        Args:
            image: Base64 image or data URL of the scanned cover
            candidates: Catalog candidates from OCR text, best first
            trigger_reason: Why vision was triggered
            scan_event_id: Scan event to attribute usage to
            user_id: User to attribute usage to

        Returns:
            VisionMatchResult, or None on analyzer failure
        """
        max_score = max((c.rank_score for c in candidates), default=0.0)

        if not candidates or max_score < self.config.identification_threshold:
            logger.info(
                "Weak candidates, running identification mode",
                candidates=len(candidates),
                max_score=round(max_score, 3),
            )
            identified = await self.run_vision_identification(image, scan_event_id, user_id)
            if identified is not None and identified.limit_reached:
                return VisionMatchResult.quota_exhausted()
            if identified is not None and identified.picks:
                return VisionMatchResult(
                    identification_mode=True,
                    identified_title=identified.identified_title,
                    identified_issue=identified.identified_issue,
                    identified_publisher=identified.identified_publisher,
                    identified_character=identified.identified_character,
                    identification_confidence=identified.identification_confidence,
                ).with_pick(identified.picks[0], self.config.identification_similarity_score)
            # Degraded path: compare against whatever candidates there are
            logger.info("Identification found nothing, continuing with comparison")

        reduced = [
            VisionCandidate.from_candidate(c)
            for c in candidates[: self.config.max_comparison_candidates]
        ]
        logger.info(
            "Vision match triggered",
            reason=str(trigger_reason),
            candidates=len(reduced),
        )

        try:
            result = await self.analyzer.compare(
                image,
                reduced,
                trigger_reason,
                scan_event_id=scan_event_id,
                user_id=user_id,
            )
        except VisionAnalyzerError as e:
            logger.error("Vision comparison failed", error=str(e))
            return None

        if result.limit_reached:
            logger.info("Vision limit reached")
            return result

        if result.has_identification:
            logger.info(
                "Analyzer fell back to identification",
                title=result.identified_title,
                confidence=result.identification_confidence,
            )
            picks = await self._search_identified(result)
            if picks:
                return self._reshape(result, picks[0])
            if result.identification_confidence >= self.config.identification_fallback_confidence:
                # No catalog hit; the identified fields still prefill a manual search
                return result
            logger.info(
                "Identification too weak to prefill",
                confidence=result.identification_confidence,
            )
            return result.model_copy(
                update={
                    "identified_title": None,
                    "identified_issue": None,
                    "identified_publisher": None,
                    "identified_character": None,
                }
            )

        override = (
            result.best_match_comic_id is not None
            and result.similarity_score >= self.config.vision_override_threshold
        )
        if override != result.vision_override_applied:
            result = result.model_copy(update={"vision_override_applied": override})

        if override:
            logger.info(
                "Vision override",
                comic_id=result.best_match_comic_id,
                score=result.similarity_score,
            )
        return result


def apply_vision_override(
    current_pick: Candidate | None,
    candidates: Sequence[Candidate],
    result: VisionMatchResult,
) -> Candidate | None:
    """Pick the UI should preselect after a vision result.

    Identification-derived overrides become a fresh pick built from the
    result; comparison overrides re-tag the matching candidate. Anything else
    keeps the current pick.
    """
    if not result.vision_override_applied or result.best_match_comic_id is None:
        return current_pick

    if result.identification_mode:
        title = result.best_match_title or ""
        return Candidate(
            id=result.best_match_comic_id,
            resource="issue",
            title=title,
            volume_name=title,
            issue=result.best_match_issue or "",
            year=result.best_match_year,
            publisher=result.best_match_publisher,
            cover_url=result.best_match_cover_url,
            thumb_url=result.best_match_cover_url,
            source="vision_identification",
            score=result.similarity_score,
        )

    for candidate in candidates:
        if candidate.id == result.best_match_comic_id:
            return candidate.model_copy(
                update={"source": "vision_comparison", "score": result.similarity_score}
            )

    return current_pick
