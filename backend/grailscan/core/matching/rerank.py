"""Score adjustment criteria for identification search results.

Each criterion returns ``(delta, reason)`` and never touches the candidate.
``adjust_candidate`` sums the deltas into the candidate's ``adjusted_score``
(starting from its original ``score``) and returns a copy; the original
relevance score is left as reported by the catalog.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from grailscan.core.utils import normalize_title

from .config import MatchingConfig, get_matching_config
from .models import Candidate

logger = structlog.get_logger("grailscan.matching.rerank")


def publisher_penalty(
    candidate_publisher: str | None,
    config: MatchingConfig | None = None,
) -> tuple[float, str]:
    """Penalize foreign/reprint publishers.

    Args:
        candidate_publisher: Publisher name from the candidate
        config: Matching configuration (if None, loads from settings file)

    Returns:
        Tuple of (score delta, reason)
    """
    if config is None:
        config = get_matching_config()

    publisher = (candidate_publisher or "").strip().lower()
    if not publisher:
        return 0.0, "No publisher"

    if publisher in config.reprint_publishers:
        return (
            -config.reprint_publisher_penalty,
            f"Reprint publisher: '{publisher}' (-{config.reprint_publisher_penalty})",
        )

    return 0.0, f"Publisher ok: '{publisher}'"


def title_match_adjustment(
    candidate_title: str | None,
    full_title: str | None,
    query_title: str | None,
    config: MatchingConfig | None = None,
) -> tuple[float, str]:
    """Adjust for how the candidate title relates to the identified title.

    Only the first matching branch applies: exact full title, exact query
    title, then a loose substring hit (penalized so "New X-Men" does not
    outrank "X-Men").

    Args:
        candidate_title: Title/volume name of the candidate
        full_title: Identified title including any subtitle
        query_title: Title used for the catalog query (may be the base title)
        config: Matching configuration (if None, loads from settings file)

    Returns:
        Tuple of (score delta, reason)
    """
    if config is None:
        config = get_matching_config()

    candidate_key = normalize_title(candidate_title)
    full_key = normalize_title(full_title)
    query_key = normalize_title(query_title)

    if not candidate_key:
        return 0.0, "No candidate title"

    if full_key and candidate_key == full_key:
        return (
            config.full_title_bonus,
            f"Exact full title: '{candidate_key}' (+{config.full_title_bonus})",
        )

    if query_key and candidate_key == query_key:
        return (
            config.base_title_bonus,
            f"Exact query title: '{candidate_key}' (+{config.base_title_bonus})",
        )

    if query_key and query_key in candidate_key:
        return (
            -config.loose_title_penalty,
            f"Loose title: '{query_key}' in '{candidate_key}' (-{config.loose_title_penalty})",
        )

    return 0.0, f"No title match: '{query_key}' vs '{candidate_key}'"


def adjust_candidate(
    candidate: Candidate,
    full_title: str | None,
    query_title: str | None,
    config: MatchingConfig | None = None,
) -> Candidate:
    """Return a copy of ``candidate`` with its adjusted score set."""
    if config is None:
        config = get_matching_config()

    publisher_delta, publisher_reason = publisher_penalty(candidate.publisher, config)
    title_delta, title_reason = title_match_adjustment(
        candidate.display_title, full_title, query_title, config
    )
    adjusted = candidate.score + publisher_delta + title_delta

    logger.debug(
        "Adjusted candidate score",
        candidate_id=candidate.id,
        score=candidate.score,
        adjusted_score=round(adjusted, 4),
        publisher=publisher_reason,
        title=title_reason,
    )
    return candidate.model_copy(
        update={"adjusted_score": adjusted, "is_reprint": publisher_delta < 0}
    )


def rerank_candidates(
    candidates: Iterable[Candidate],
    full_title: str | None,
    query_title: str | None,
    config: MatchingConfig | None = None,
) -> list[Candidate]:
    """Adjust, sort by adjusted score (descending) and drop scores <= 0."""
    if config is None:
        config = get_matching_config()

    adjusted = [adjust_candidate(c, full_title, query_title, config) for c in candidates]
    adjusted.sort(key=lambda c: c.rank_score, reverse=True)
    return [c for c in adjusted if c.rank_score > 0]
