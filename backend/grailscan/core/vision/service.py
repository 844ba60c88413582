"""Vision-match service: quota, prompts, model call, parsing and usage logging.

This is the server side of the vision analyzer. It is exposed over HTTP at
``/api/vision-match`` and also used in-process as a ``VisionAnalyzer`` when no
remote service URL is configured.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col, func, select

from grailscan.core.database import SessionFactory, retry_db_operation
from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.matching.models import (
    TriggerReason,
    VisionCandidate,
    VisionMatchRequest,
    VisionMatchResult,
)
from grailscan.core.metrics import vision_requests_total
from grailscan.db.models import ScanVisionUsage

from .base import VisionAnalyzer, VisionAnalyzerError
from .gateway import AIGateway, AIGatewayError
from .prompts import (
    build_comparison_prompt,
    build_identification_prompt,
    parse_comparison,
    parse_identification,
    weak_candidates_hint,
)

logger = structlog.get_logger("grailscan.vision.service")

UNAVAILABLE_ERROR = "Vision API temporarily unavailable"


class VisionNotConfiguredError(VisionAnalyzerError):
    """No AI gateway API key is configured."""


def month_start_epoch(now: datetime | None = None) -> int:
    """Epoch seconds of the first instant of the current UTC calendar month."""
    now = now or datetime.now(UTC)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp())


class VisionMatchService(VisionAnalyzer):
    """Compares or identifies a scanned cover with a vision model."""

    def __init__(
        self,
        gateway: AIGateway | None,
        session_factory: SessionFactory,
        config: MatchingConfig | None = None,
        monthly_limit: int = 0,
    ) -> None:
        self.gateway = gateway
        self.session_factory = session_factory
        self.config = config or get_matching_config()
        self.monthly_limit = monthly_limit

    @property
    def configured(self) -> bool:
        return self.gateway is not None

    async def monthly_usage(self) -> int:
        """Vision calls made this calendar month (quota-blocked calls excluded)."""
        async with self.session_factory() as session:
            query = (
                select(func.count())
                .select_from(ScanVisionUsage)
                .where(col(ScanVisionUsage.created_at) >= month_start_epoch())
                .where(col(ScanVisionUsage.limit_reached).is_(False))
            )
            result = await session.exec(query)
            return int(result.one())

    async def is_available(self) -> bool:
        """Whether the monthly quota allows another call.

        Raises:
            VisionAnalyzerError: When the usage count cannot be read
        """
        if self.monthly_limit <= 0:
            return True
        try:
            usage = await self.monthly_usage()
        except SQLAlchemyError as e:
            logger.error("Failed to read vision usage", error=str(e))
            raise VisionAnalyzerError("Vision usage unavailable") from e
        return usage < self.monthly_limit

    async def _record_usage(
        self,
        request: VisionMatchRequest,
        result: VisionMatchResult,
    ) -> None:
        usage = ScanVisionUsage(
            triggered_by=str(request.triggered_by),
            candidates_compared=result.candidates_compared,
            similarity_score=result.similarity_score,
            matched_comic_id=result.best_match_comic_id,
            matched_title=result.best_match_title or result.identified_title,
            vision_override_applied=result.vision_override_applied,
            identification_mode=result.identification_mode,
            limit_reached=result.limit_reached,
            scan_event_id=request.scan_event_id,
            user_id=request.user_id,
        )
        try:
            async with self.session_factory() as session:

                async def write() -> None:
                    # Re-add on every attempt: a lock rollback expunges the pending row
                    session.add(usage)
                    await session.commit()

                await retry_db_operation(write, session=session, operation_type="insert")
        except SQLAlchemyError as e:
            # Usage logging must not change the answer the caller gets
            logger.error("Failed to record vision usage", error=str(e))

    async def analyze(self, request: VisionMatchRequest) -> VisionMatchResult:
        """Run one vision-match request.

        Raises:
            VisionNotConfiguredError: When no AI gateway is configured
        """
        if self.gateway is None:
            raise VisionNotConfiguredError("Vision matching not configured")

        if not await self.is_available():
            logger.info("Monthly vision limit reached", limit=self.monthly_limit)
            result = VisionMatchResult.quota_exhausted()
            await self._record_usage(request, result)
            vision_requests_total.labels(mode="quota", outcome="limit_reached").inc()
            return result

        candidates = request.candidates[: self.config.max_comparison_candidates]
        max_score = max((c.score for c in candidates), default=0.0)

        if (
            request.force_identification
            or not candidates
            or max_score < self.config.identification_threshold
        ):
            logger.info(
                "Running identification mode",
                forced=request.force_identification,
                candidates=len(candidates),
                max_score=round(max_score, 3),
            )
            result = await self._identify(request.image, hint=None, candidates_compared=0)
        else:
            result = await self._compare(request.image, candidates)

        await self._record_usage(request, result)
        return result

    def _require_gateway(self) -> AIGateway:
        if self.gateway is None:
            raise VisionNotConfiguredError("Vision matching not configured")
        return self.gateway

    async def _compare(
        self,
        image: str,
        candidates: Sequence[VisionCandidate],
    ) -> VisionMatchResult:
        count = len(candidates)
        system_prompt, user_prompt = build_comparison_prompt(candidates)
        logger.info("Comparing scan against candidates", candidates=count)

        try:
            content = await self._require_gateway().complete(system_prompt, user_prompt, image)
        except AIGatewayError as e:
            logger.error("Vision comparison failed", error=str(e), status_code=e.status_code)
            vision_requests_total.labels(mode="comparison", outcome="error").inc()
            return VisionMatchResult(candidates_compared=count, error=UNAVAILABLE_ERROR)

        parsed = parse_comparison(content)
        best = (
            candidates[parsed.best_match_index - 1]
            if 0 < parsed.best_match_index <= count
            else None
        )
        override = best is not None and parsed.similarity_score >= self.config.vision_override_threshold

        logger.info(
            "Vision comparison complete",
            best_match_index=parsed.best_match_index,
            score=parsed.similarity_score,
            override=override,
            reasoning=parsed.reasoning or None,
        )

        if parsed.similarity_score < self.config.identification_threshold:
            logger.info(
                "Weak comparison, falling back to identification",
                score=parsed.similarity_score,
            )
            vision_requests_total.labels(mode="comparison", outcome="fallback").inc()
            return await self._identify(
                image,
                hint=weak_candidates_hint(candidates),
                candidates_compared=count,
            )

        vision_requests_total.labels(mode="comparison", outcome="ok").inc()
        result = VisionMatchResult(
            similarity_score=parsed.similarity_score,
            vision_override_applied=override,
            candidates_compared=count,
        )
        if best is None:
            return result
        return result.model_copy(
            update={
                "best_match_comic_id": best.id,
                "best_match_title": best.title or None,
                "best_match_issue": best.issue,
                "best_match_publisher": best.publisher,
                "best_match_year": best.year,
                "best_match_cover_url": best.cover_url or None,
            }
        )

    async def _identify(
        self,
        image: str,
        hint: str | None,
        candidates_compared: int,
    ) -> VisionMatchResult:
        system_prompt, user_prompt = build_identification_prompt(hint)

        try:
            content = await self._require_gateway().complete(system_prompt, user_prompt, image)
        except AIGatewayError as e:
            logger.error("Vision identification failed", error=str(e), status_code=e.status_code)
            vision_requests_total.labels(mode="identification", outcome="error").inc()
            return VisionMatchResult(
                candidates_compared=candidates_compared,
                identification_mode=True,
                error=UNAVAILABLE_ERROR,
            )

        parsed = parse_identification(content)
        logger.info(
            "Vision identification complete",
            title=parsed.title,
            issue=parsed.issue,
            character=parsed.character,
            confidence=parsed.confidence,
        )
        vision_requests_total.labels(
            mode="identification", outcome="ok" if parsed.identified else "empty"
        ).inc()
        return VisionMatchResult(
            candidates_compared=candidates_compared,
            identification_mode=True,
            identified_title=parsed.title,
            identified_issue=parsed.issue,
            identified_publisher=parsed.publisher,
            identified_character=parsed.character,
            identification_confidence=parsed.confidence,
        )

    async def compare(
        self,
        image: str,
        candidates: Sequence[VisionCandidate],
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        return await self.analyze(
            VisionMatchRequest(
                image=image,
                candidates=list(candidates),
                triggered_by=triggered_by,
                scan_event_id=scan_event_id,
                user_id=user_id,
            )
        )

    async def identify(
        self,
        image: str,
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        return await self.analyze(
            VisionMatchRequest(
                image=image,
                triggered_by=triggered_by,
                scan_event_id=scan_event_id,
                user_id=user_id,
                force_identification=True,
            )
        )
