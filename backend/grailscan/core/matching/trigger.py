"""Vision trigger policy.

Decides, without any I/O, whether a scan should be escalated to the vision
analyzer and tags the reason. Rules are evaluated in a fixed order and the
first one that fires wins:

1. user asked for a correction
2. a confirmed correction is cached for this OCR text
3. vision-first mode
4. legacy OCR-trust checks (used only when vision-first is off)

Each OCR sanity check is a separate criterion returning ``(fired, detail)`` so
it can be tested on its own.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from grailscan.core.metrics import trigger_decisions_total
from grailscan.core.utils import normalize_title

from .config import MatchingConfig, get_matching_config
from .models import Candidate, TriggerDecision, TriggerReason

logger = structlog.get_logger("grailscan.matching.trigger")

NO_TRIGGER = TriggerDecision(should=False, reason=None)


def title_is_publisher_name(
    ocr_title: str | None,
    config: MatchingConfig | None = None,
) -> tuple[bool, str]:
    """Check whether OCR read a publisher logo instead of the title.

    Args:
        ocr_title: Title extracted by OCR
        config: Matching configuration (if None, loads from settings file)

    Returns:
        Tuple of (fired, detail)
    """
    if config is None:
        config = get_matching_config()

    normalized = normalize_title(ocr_title)
    if not normalized:
        return False, "No OCR title"

    if normalized in config.publisher_names:
        return True, f"Title is a publisher name: '{normalized}'"

    words = normalized.split(" ")
    if len(words) == 1 and words[0] in config.publisher_names:
        return True, f"Title word is a publisher name: '{words[0]}'"

    return False, f"Not a publisher name: '{normalized}'"


def title_is_too_short(
    ocr_title: str | None,
    config: MatchingConfig | None = None,
) -> tuple[bool, str]:
    """Check whether the OCR title is too short to be anything but a misread."""
    if config is None:
        config = get_matching_config()

    normalized = normalize_title(ocr_title)
    if not normalized:
        return False, "No OCR title"

    if len(normalized) <= config.max_garbled_title_length:
        return True, f"Title too short: '{normalized}' ({len(normalized)} chars)"

    return False, f"Title length ok: {len(normalized)} chars"


def title_is_stylized_logo(
    ocr_title: str | None,
    ocr_issue: str | None,
) -> tuple[bool, str]:
    """Check for a single all-caps word with no issue number.

    Stylized one-word logos ("HULK", "SPAWN") are frequently misread, and
    without an issue number there is nothing to corroborate the read.
    """
    title = (ocr_title or "").strip()
    if not title:
        return False, "No OCR title"

    if ocr_issue:
        return False, "Issue number extracted"

    words = title.split()
    if len(words) == 1 and title.isupper():
        return True, f"Single uppercase word without issue: '{title}'"

    return False, "Not a single uppercase word"


def issue_missing_from_ocr(
    ocr_issue: str | None,
    candidates: Sequence[Candidate],
) -> tuple[bool, str]:
    """Check whether OCR missed an issue number the top candidate has."""
    if ocr_issue:
        return False, "Issue number extracted"

    if not candidates:
        return False, "No candidates"

    top_issue = (candidates[0].issue or "").strip()
    if top_issue:
        return True, f"OCR missed issue number; top candidate has #{top_issue}"

    return False, "Top candidate has no issue number"


def decide_trigger(
    ocr_confidence: float,
    candidates: Sequence[Candidate],
    user_triggered: bool = False,
    ocr_extracted_title: str | None = None,
    ocr_extracted_issue: str | None = None,
    has_cache_hit: bool = False,
    config: MatchingConfig | None = None,
) -> TriggerDecision:
    """Decide whether the vision analyzer should run for this scan.

    Args:
        ocr_confidence: OCR confidence in [0, 1]
        candidates: Candidate list from the catalog, best first
        user_triggered: User explicitly asked to fix the match
        ocr_extracted_title: Title OCR pulled off the cover, if any
        ocr_extracted_issue: Issue number OCR pulled off the cover, if any
        has_cache_hit: A confirmed correction exists for this OCR text
        config: Matching configuration (if None, loads from settings file)

    Returns:
        TriggerDecision with the first rule that fired
    """
    if config is None:
        config = get_matching_config()

    decision = _evaluate_rules(
        ocr_confidence,
        candidates,
        user_triggered,
        ocr_extracted_title,
        ocr_extracted_issue,
        has_cache_hit,
        config,
    )
    trigger_decisions_total.labels(
        reason=decision.reason.value if decision.reason else "none"
    ).inc()
    return decision


def _evaluate_rules(
    ocr_confidence: float,
    candidates: Sequence[Candidate],
    user_triggered: bool,
    ocr_title: str | None,
    ocr_issue: str | None,
    has_cache_hit: bool,
    config: MatchingConfig,
) -> TriggerDecision:
    if user_triggered:
        logger.debug("Vision triggered by user correction")
        return TriggerDecision(should=True, reason=TriggerReason.USER_CORRECTION)

    if has_cache_hit:
        logger.debug("Correction cache hit, skipping vision")
        return NO_TRIGGER

    if config.vision_first_mode:
        return TriggerDecision(should=True, reason=TriggerReason.VISION_FIRST)

    if not candidates:
        logger.debug("No candidates, triggering vision")
        return TriggerDecision(should=True, reason=TriggerReason.AUTO_LOW_CONFIDENCE)

    for fired, detail in (
        title_is_publisher_name(ocr_title, config),
        title_is_too_short(ocr_title, config),
        title_is_stylized_logo(ocr_title, ocr_issue),
        issue_missing_from_ocr(ocr_issue, candidates),
    ):
        if fired:
            logger.debug("OCR sanity check failed", detail=detail)
            return TriggerDecision(should=True, reason=TriggerReason.SANITY_CHECK)

    if ocr_confidence < config.confidence_threshold:
        logger.debug(
            "Low OCR confidence",
            confidence=ocr_confidence,
            threshold=config.confidence_threshold,
        )
        return TriggerDecision(should=True, reason=TriggerReason.AUTO_LOW_CONFIDENCE)

    if len(candidates) >= 2:
        # Rounded so a gap of exactly the threshold (0.90 - 0.80) is not ambiguous
        gap = round(candidates[0].score - candidates[1].score, 9)
        if gap < config.candidate_gap_threshold:
            logger.debug("Close top candidates", gap=round(gap, 4))
            return TriggerDecision(should=True, reason=TriggerReason.MULTIPLE_CANDIDATES)

    return NO_TRIGGER
