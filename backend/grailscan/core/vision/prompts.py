"""Prompt builders and model-response parsing for the vision analyzer.

Comparison and identification share the response parsing rules: the first
``{...}`` object in the model text is decoded, anything unparseable yields an
empty parse (index 0 / zero confidence).
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from grailscan.core.matching.models import VisionCandidate

logger = structlog.get_logger("grailscan.vision.prompts")

_JSON_OBJECT = re.compile(r"\{[\s\S]*?\}")

# Characters whose names often stand in for the series title on a cover
CHARACTER_HINTS = (
    "Spider-Man",
    "Batman",
    "Superman",
    "Wolverine",
    "Hulk",
    "X-Men",
    "Wonder Woman",
    "Spawn",
    "Venom",
    "Deadpool",
)

COMPARISON_SYSTEM_PROMPT = """You are a comic book cover identification expert. You will be shown a scanned comic book cover image. Your task is to compare it against the provided candidate covers and determine which one matches best.

Analyze:
1. Title text on the cover
2. Issue number
3. Cover artwork and composition
4. Publisher logo
5. Characters depicted
6. Color scheme and art style

Respond with a JSON object containing:
- "best_match_index": The 1-based index of the best matching candidate (1-{count}), or 0 if none match well
- "similarity_score": A confidence score from 0.0 to 1.0 indicating how well the best match matches
- "reasoning": Brief explanation of why this match was chosen

Be strict - only give high similarity scores (>0.85) if the cover art, title, and issue number clearly match. Lower scores for partial matches."""

IDENTIFICATION_SYSTEM_PROMPT = """You are a comic book cover identification expert. You will be shown a scanned comic book cover image with no list of candidates. Identify the comic from the image alone.

Read the title logo, issue number, publisher logo and cover date. If the title logo is stylized or unreadable, name the main character instead (for example {characters}).

Respond with a JSON object containing:
- "title": The series title as printed (without the issue number), or null
- "issue": The issue number as printed, or null
- "publisher": The publisher name, or null
- "character": The main character on the cover, or null
- "confidence": A score from 0.0 to 1.0 for how sure you are of the title

Do not guess an issue number that is not visible on the cover."""


@dataclass(frozen=True)
class ComparisonParse:
    best_match_index: int = 0
    similarity_score: float = 0.0
    reasoning: str = ""


@dataclass(frozen=True)
class IdentificationParse:
    title: str | None = None
    issue: str | None = None
    publisher: str | None = None
    character: str | None = None
    confidence: float = 0.0

    @property
    def identified(self) -> bool:
        return bool(self.title or self.character)


def describe_candidate(position: int, candidate: VisionCandidate) -> str:
    return (
        f'{position}. "{candidate.title}" #{candidate.issue or "N/A"} '
        f"({candidate.publisher or 'Unknown'}, {candidate.year or 'Unknown'})"
        f" - Cover URL: {candidate.cover_url}"
    )


def build_comparison_prompt(candidates: Sequence[VisionCandidate]) -> tuple[str, str]:
    """Build (system, user) prompts listing candidates with 1-based positions."""
    count = len(candidates)
    descriptions = "\n".join(describe_candidate(i + 1, c) for i, c in enumerate(candidates))
    user_prompt = (
        f"Here are the {count} candidate comics to compare against:\n\n"
        f"{descriptions}\n\n"
        "Look at the scanned cover image and determine which candidate (if any) best matches it. "
        "Consider the title, issue number, cover art, and publisher."
    )
    return COMPARISON_SYSTEM_PROMPT.replace("{count}", str(count)), user_prompt


def build_identification_prompt(hint: str | None = None) -> tuple[str, str]:
    """Build (system, user) prompts for identifying a cover from the image alone.

    Args:
        hint: Optional extra context, e.g. the candidate titles a comparison
            already ruled out

    Returns:
        Tuple of (system prompt, user prompt)
    """
    system_prompt = IDENTIFICATION_SYSTEM_PROMPT.replace(
        "{characters}", ", ".join(CHARACTER_HINTS)
    )
    user_prompt = "Identify this comic book from its cover."
    if hint:
        user_prompt = f"{user_prompt}\n\n{hint}"
    return system_prompt, user_prompt


def weak_candidates_hint(candidates: Sequence[VisionCandidate], limit: int = 5) -> str | None:
    """Hint naming candidate titles that scored poorly against the cover."""
    titles = [c.title for c in candidates[:limit] if c.title]
    if not titles:
        return None
    listed = "; ".join(f'"{t}"' for t in titles)
    return f"A text search suggested {listed}, but none of these matched the cover well."


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Decode the first {...} object in the model text, or None."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError as e:
        logger.warning("Failed to parse model response", error=str(e))
        return None
    return parsed if isinstance(parsed, dict) else None


def _as_score(value: Any) -> float:
    try:
        score = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return min(max(score, 0.0), 1.0)


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "unknown", "n/a"):
        return None
    return text


def parse_comparison(text: str) -> ComparisonParse:
    data = extract_json_object(text)
    if data is None:
        return ComparisonParse()
    try:
        index = int(data.get("best_match_index") or 0)
    except (TypeError, ValueError):
        index = 0
    return ComparisonParse(
        best_match_index=max(index, 0),
        similarity_score=_as_score(data.get("similarity_score")),
        reasoning=str(data.get("reasoning") or ""),
    )


def parse_identification(text: str) -> IdentificationParse:
    data = extract_json_object(text)
    if data is None:
        return IdentificationParse()
    return IdentificationParse(
        title=_as_text(data.get("title")),
        issue=_as_text(data.get("issue")),
        publisher=_as_text(data.get("publisher")),
        character=_as_text(data.get("character")),
        confidence=_as_score(data.get("confidence")),
    )
