"""Correction cache: confirmed matches keyed by normalized OCR text.

A row is written only after the user confirms a pick and only when the vision
confidence behind it is high enough. Writes are a single
``INSERT ... ON CONFLICT (normalized_input)`` statement, so concurrent first
writes for the same text cannot both land; what happens on conflict is the
configured ``cache_write_policy``.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

import structlog
from sqlalchemy import or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import col, select

from grailscan.core.database import SessionFactory, retry_db_operation
from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.matching.models import Candidate
from grailscan.core.metrics import correction_cache_lookups_total, correction_cache_writes_total
from grailscan.core.utils import normalize_input_text
from grailscan.db.models import ScanCorrection

logger = structlog.get_logger("grailscan.scanner.corrections")

# Columns replaced when a policy lets a new confirmation win
_UPDATABLE_COLUMNS = (
    "input_text",
    "selected_comicvine_id",
    "selected_volume_id",
    "selected_title",
    "selected_issue",
    "selected_year",
    "selected_publisher",
    "selected_cover_url",
    "original_confidence",
    "user_id",
    "updated_at",
)


def confidence_percent(confidence: float) -> int:
    """0-1 confidence as a rounded 0-100 integer."""
    return int(round(max(0.0, min(confidence, 1.0)) * 100))


class CorrectionCache:
    """Read and write confirmed scan corrections."""

    def __init__(self, session_factory: SessionFactory, config: MatchingConfig | None = None) -> None:
        self.session_factory = session_factory
        self.config = config or get_matching_config()

    async def get(self, text: str | None) -> ScanCorrection | None:
        """Stored correction for raw or normalized OCR text, if any."""
        normalized = normalize_input_text(text)
        if not normalized:
            return None

        async with self.session_factory() as session:
            result = await session.exec(
                select(ScanCorrection).where(col(ScanCorrection.normalized_input) == normalized)
            )
            return result.first()

    async def lookup(self, normalized_text: str | None) -> bool:
        """Whether a confirmed correction exists for this text."""
        hit = await self.get(normalized_text) is not None
        correction_cache_lookups_total.labels(result="hit" if hit else "miss").inc()
        logger.debug("Correction cache lookup", hit=hit)
        return hit

    def _row_values(
        self,
        ocr_text: str,
        normalized: str,
        pick: Candidate,
        vision_confidence: float,
        user_id: str | None,
    ) -> dict[str, Any]:
        now = int(time.time())
        return {
            "id": uuid.uuid4().hex,
            "normalized_input": normalized,
            "input_text": ocr_text,
            "selected_comicvine_id": pick.id,
            "selected_volume_id": pick.volume_id,
            "selected_title": pick.display_title,
            "selected_issue": pick.issue or None,
            "selected_year": pick.year,
            "selected_publisher": pick.publisher,
            "selected_cover_url": pick.cover_url or None,
            "original_confidence": confidence_percent(vision_confidence),
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        }

    def _upsert_statement(self, values: dict[str, Any]):
        stmt = sqlite_insert(ScanCorrection).values(**values)
        policy = self.config.cache_write_policy

        if policy == "keep_first":
            return stmt.on_conflict_do_nothing(index_elements=["normalized_input"])

        replacement = {name: stmt.excluded[name] for name in _UPDATABLE_COLUMNS}
        if policy == "overwrite":
            return stmt.on_conflict_do_update(index_elements=["normalized_input"], set_=replacement)

        if policy == "keep_highest":
            current = col(ScanCorrection.original_confidence)
            return stmt.on_conflict_do_update(
                index_elements=["normalized_input"],
                set_=replacement,
                where=or_(current.is_(None), current < stmt.excluded.original_confidence),
            )

        raise ValueError(f"Unknown cache write policy: {policy}")

    async def save(
        self,
        ocr_text: str | None,
        pick: Candidate | None,
        vision_confidence: float,
        user_id: str | None = None,
    ) -> bool:
        """Store a user-confirmed pick for this OCR text.

        No-ops (returning False) for empty text, a pick without an id, a
        confidence below ``cache_min_confidence`` or a conflict the write
        policy keeps.

        Returns:
            True when a row was inserted or updated
        """
        normalized = normalize_input_text(ocr_text)
        if not normalized or pick is None or not pick.id:
            correction_cache_writes_total.labels(outcome="invalid").inc()
            logger.debug("Skipping correction save: missing text or pick")
            return False

        if vision_confidence < self.config.cache_min_confidence:
            correction_cache_writes_total.labels(outcome="below_threshold").inc()
            logger.debug(
                "Skipping correction save: confidence below threshold",
                confidence=vision_confidence,
                threshold=self.config.cache_min_confidence,
            )
            return False

        stmt = self._upsert_statement(
            self._row_values(ocr_text or "", normalized, pick, vision_confidence, user_id)
        )
        async with self.session_factory() as session:

            async def write() -> int:
                # A lock rollback discards the statement, so each attempt re-executes it
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount

            rowcount = await retry_db_operation(
                write, session=session, operation_type="upsert_correction"
            )

        written = bool(rowcount)
        correction_cache_writes_total.labels(outcome="written" if written else "conflict").inc()
        logger.info(
            "Correction saved" if written else "Correction kept existing entry",
            comic_id=pick.id,
            confidence=confidence_percent(vision_confidence),
            policy=self.config.cache_write_policy,
        )
        return written
