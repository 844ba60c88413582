"""Scan matching: trigger policy, candidate models and identification re-ranking.

Thresholds, score adjustments and lookup sets all live on ``MatchingConfig`` so
they can be tuned from settings and substituted in tests.
"""

from .config import DEFAULT_CONFIG, CacheWritePolicy, MatchingConfig, get_matching_config
from .models import (
    Candidate,
    CandidateSource,
    CatalogSearchResponse,
    IdentificationOutcome,
    IssueCover,
    TriggerDecision,
    TriggerReason,
    VisionCandidate,
    VisionMatchRequest,
    VisionMatchResult,
)
from .rerank import adjust_candidate, publisher_penalty, rerank_candidates, title_match_adjustment
from .trigger import (
    decide_trigger,
    issue_missing_from_ocr,
    title_is_publisher_name,
    title_is_stylized_logo,
    title_is_too_short,
)

__all__ = [
    "MatchingConfig",
    "DEFAULT_CONFIG",
    "CacheWritePolicy",
    "get_matching_config",
    "Candidate",
    "CandidateSource",
    "CatalogSearchResponse",
    "IdentificationOutcome",
    "IssueCover",
    "TriggerDecision",
    "TriggerReason",
    "VisionCandidate",
    "VisionMatchRequest",
    "VisionMatchResult",
    "decide_trigger",
    "title_is_publisher_name",
    "title_is_too_short",
    "title_is_stylized_logo",
    "issue_missing_from_ocr",
    "publisher_penalty",
    "title_match_adjustment",
    "adjust_candidate",
    "rerank_candidates",
]
