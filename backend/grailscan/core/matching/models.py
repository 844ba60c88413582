"""Pydantic models shared by the trigger policy, vision orchestration and re-ranker.

Wire format is camelCase (the scanner frontend and the vision service speak
JSON with camelCase keys); Python attributes are snake_case.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CandidateSource = Literal["catalog_search", "vision_comparison", "vision_identification"]


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TriggerReason(StrEnum):
    """Why the vision analyzer was (or should be) invoked."""

    AUTO_LOW_CONFIDENCE = "auto_low_confidence"
    MULTIPLE_CANDIDATES = "multiple_candidates"
    USER_CORRECTION = "user_correction"
    SANITY_CHECK = "sanity_check"
    VISION_FIRST = "vision_first"


class TriggerDecision(CamelModel):
    """Outcome of the trigger policy for one scan attempt."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    should: bool
    reason: TriggerReason | None = None


class Candidate(CamelModel):
    """A catalog match proposal.

    ``score`` is the relevance reported by whoever produced the candidate
    (roughly 0-1). ``adjusted_score`` is set by the identification re-ranker
    and may leave that range; only the adjusted score is filtered at <= 0.
    Candidates are never mutated: adjustments return copies.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    resource: Literal["issue", "volume"] = "issue"
    title: str = ""
    volume_name: str | None = None
    volume_id: int | None = None
    issue: str = ""
    year: int | None = None
    publisher: str | None = None
    cover_url: str | None = None
    thumb_url: str | None = None
    source: CandidateSource = "catalog_search"
    score: float = 0.0
    adjusted_score: float | None = None
    is_reprint: bool = False

    @field_validator("issue", mode="before")
    @classmethod
    def _issue_as_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @property
    def display_title(self) -> str:
        """Volume name when present, otherwise the title."""
        return self.volume_name or self.title

    @property
    def rank_score(self) -> float:
        """Score used for ordering: adjusted when available, otherwise original."""
        return self.adjusted_score if self.adjusted_score is not None else self.score


class VisionCandidate(CamelModel):
    """Reduced candidate sent to the vision analyzer for comparison."""

    id: int
    title: str = ""
    issue: str | None = None
    publisher: str | None = None
    year: int | None = None
    cover_url: str = ""
    score: float = 0.0

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> VisionCandidate:
        return cls(
            id=candidate.id,
            title=candidate.title or candidate.volume_name or "",
            issue=candidate.issue or None,
            publisher=candidate.publisher,
            year=candidate.year,
            cover_url=candidate.cover_url or candidate.thumb_url or "",
            score=candidate.rank_score,
        )


class VisionMatchRequest(CamelModel):
    """Request accepted by the vision analyzer service."""

    image: str = Field(
        default="",
        validation_alias=AliasChoices("image", "scanImageBase64"),
        serialization_alias="image",
    )
    candidates: list[VisionCandidate] = Field(default_factory=list)
    triggered_by: TriggerReason = TriggerReason.AUTO_LOW_CONFIDENCE
    scan_event_id: str | None = None
    user_id: str | None = None
    force_identification: bool = False


class VisionMatchResult(CamelModel):
    """Normalized output of a vision analyzer call.

    Either the comparison fields or the identification fields are meaningful
    for a single service call; ``limit_reached`` means the call was blocked
    by the monthly quota and every other field is empty.
    """

    best_match_comic_id: int | None = None
    best_match_title: str | None = None
    best_match_issue: str | None = None
    best_match_publisher: str | None = None
    best_match_year: int | None = None
    best_match_cover_url: str | None = None
    similarity_score: float = 0.0
    vision_override_applied: bool = False
    candidates_compared: int = 0
    limit_reached: bool = False
    identification_mode: bool = False
    identified_title: str | None = None
    identified_issue: str | None = None
    identified_publisher: str | None = None
    identified_character: str | None = None
    identification_confidence: float = 0.0
    error: str | None = None

    @classmethod
    def quota_exhausted(cls) -> VisionMatchResult:
        return cls(limit_reached=True)

    @property
    def has_identification(self) -> bool:
        """True when the service named a title or character."""
        return self.identification_mode and bool(
            self.identified_title or self.identified_character
        )

    def with_pick(self, pick: Candidate, similarity_score: float) -> VisionMatchResult:
        """Copy of this result with the best-match fields taken from a pick."""
        return self.model_copy(
            update={
                "best_match_comic_id": pick.id,
                "best_match_title": pick.display_title or None,
                "best_match_issue": pick.issue or None,
                "best_match_publisher": pick.publisher,
                "best_match_year": pick.year,
                "best_match_cover_url": pick.cover_url or None,
                "similarity_score": similarity_score,
                "vision_override_applied": True,
            }
        )


class IdentificationOutcome(CamelModel):
    """Identification-mode result plus the catalog picks it produced."""

    picks: list[Candidate] = Field(default_factory=list)
    identified_title: str | None = None
    identified_issue: str | None = None
    identified_publisher: str | None = None
    identified_character: str | None = None
    identification_confidence: float = 0.0
    limit_reached: bool = False


class IssueCover(CamelModel):
    """Cover data for one issue of a volume."""

    id: int
    cover_url: str
    thumb_url: str | None = None


class CatalogSearchResponse(CamelModel):
    """Catalog search response; ``results`` are raw camelCase candidate dicts."""

    ok: bool = True
    results: list[dict[str, Any]] = Field(default_factory=list)
    query: str | None = None
    error: str | None = None
