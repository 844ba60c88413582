"""Database models for GrailScan.

All SQLModel models should be defined here and imported in db/__init__.py.

Models follow these patterns:
- Use singular nouns: ScanCorrection, ScanVisionUsage
- Table names use plural, snake_case: scan_corrections
- Use uuid.uuid4().hex for IDs (32 character hex strings)
- Timestamps are integer epoch seconds
"""

from __future__ import annotations

import time
import uuid

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

# All models with table=True register here automatically
metadata = SQLModel.metadata


class ScanCorrection(SQLModel, table=True):
    """A user-confirmed match for a normalized OCR text (the correction cache)."""

    __tablename__ = "scan_corrections"  # type: ignore[assignment]

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    normalized_input: str  # lower-cased, trimmed OCR text; lookup key
    input_text: str  # raw OCR text as captured
    selected_comicvine_id: int
    selected_volume_id: int | None = Field(default=None)
    selected_title: str
    selected_issue: str | None = Field(default=None)
    selected_year: int | None = Field(default=None)
    selected_publisher: str | None = Field(default=None)
    selected_cover_url: str | None = Field(default=None)
    original_confidence: int | None = Field(default=None)  # 0-100
    user_id: str | None = Field(default=None, index=True)
    created_at: int = Field(default_factory=lambda: int(time.time()))
    updated_at: int = Field(default_factory=lambda: int(time.time()))

    __table_args__ = (
        Index("idx_scan_corrections_normalized_input", "normalized_input", unique=True),
    )


class ScanVisionUsage(SQLModel, table=True):
    """One row per vision analyzer call; drives the monthly quota."""

    __tablename__ = "scan_vision_usage"  # type: ignore[assignment]

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    triggered_by: str  # TriggerReason value
    candidates_compared: int = Field(default=0)
    similarity_score: float | None = Field(default=None)
    matched_comic_id: int | None = Field(default=None)
    matched_title: str | None = Field(default=None)
    vision_override_applied: bool = Field(default=False)
    identification_mode: bool = Field(default=False)
    limit_reached: bool = Field(default=False)
    scan_event_id: str | None = Field(default=None)
    user_id: str | None = Field(default=None)
    created_at: int = Field(default_factory=lambda: int(time.time()))

    __table_args__ = (Index("idx_scan_vision_usage_created_at", "created_at"),)
