"""Matching configuration - thresholds, score adjustments and lookup sets."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Literal

import structlog

if TYPE_CHECKING:
    from grailscan.core.config import Settings

logger = structlog.get_logger("grailscan.matching.config")

# What to do when a correction already exists for a normalized input
CacheWritePolicy = Literal["keep_first", "overwrite", "keep_highest"]

# Publisher names OCR tends to pick up from the logo instead of the title
DEFAULT_PUBLISHER_NAMES: frozenset[str] = frozenset(
    {
        "marvel",
        "dc",
        "image",
        "dark horse",
        "idw",
        "boom",
        "valiant",
        "dynamite",
        "archie",
        "vertigo",
        "wildstorm",
        "top cow",
        "oni",
        "aftershock",
        "scout",
        "titan",
        "vault",
        "mad cave",
        "ablaze",
    }
)

# Foreign/reprint publishers whose catalog entries look like US originals
DEFAULT_REPRINT_PUBLISHERS: frozenset[str] = frozenset(
    {
        "panini",
        "panini comics",
        "panini uk",
        "panini deutschland",
        "panini verlag",
        "panini france",
        "panini españa",
        "panini espana",
        "panini italia",
        "panini brasil",
        "editorial vid",
        "editorial televisa",
        "televisa",
        "planeta deagostini",
        "planeta-deagostini",
        "semic",
        "egmont",
        "marvel italia",
        "marvel france",
        "hachette",
        "ediciones zinco",
        "comics usa",
        "juniorpress",
        "atlantic forlag",
        "atlantic förlag",
        "condor",
        "williams",
        "williams verlag",
        "bsv williams verlag",
    }
)


@dataclass
class MatchingConfig:
    """Configuration for scan matching.

    Centralizes every threshold, score adjustment, lookup set and policy used
    by the trigger policy, the vision orchestration, the re-ranker and the
    correction cache.
    """

    # Trigger policy
    vision_first_mode: bool = True
    confidence_threshold: float = 0.80
    candidate_gap_threshold: float = 0.10
    max_garbled_title_length: int = 2
    publisher_names: frozenset[str] = field(default_factory=lambda: DEFAULT_PUBLISHER_NAMES)

    # Vision
    vision_override_threshold: float = 0.85
    identification_threshold: float = 0.50
    identification_fallback_confidence: float = 0.70
    identification_similarity_score: float = 0.85  # reported for identification-derived picks
    max_comparison_candidates: int = 15

    # Identification search & re-ranking
    max_identification_results: int = 20
    identification_default_score: float = 0.8
    min_base_title_length: int = 3
    full_title_bonus: float = 0.7
    base_title_bonus: float = 0.5
    loose_title_penalty: float = 0.3
    reprint_publisher_penalty: float = 1.0
    reprint_publishers: frozenset[str] = field(default_factory=lambda: DEFAULT_REPRINT_PUBLISHERS)
    backfill_default_issue: str = "1"

    # Correction cache
    cache_min_confidence: float = 0.70
    cache_write_policy: CacheWritePolicy = "keep_first"

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> MatchingConfig:
        """Build a config from a settings dict, ignoring unknown keys.

        Lookup sets may be given as lists; they are lowercased into frozensets.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            if key not in known:
                logger.warning("Ignoring unknown matching setting", key=key)
                continue
            if key in ("publisher_names", "reprint_publishers"):
                value = frozenset(str(v).strip().lower() for v in value)
            kwargs[key] = value
        return cls(**kwargs)


# Default config instance
DEFAULT_CONFIG = MatchingConfig()


def get_matching_config(settings: Settings | None = None) -> MatchingConfig:
    """Get the matching configuration for the current settings.

    Args:
        settings: Application settings (if None, loads the cached settings)

    Returns:
        MatchingConfig with any overrides from the "matching" settings section
    """
    if settings is None:
        from grailscan.core.config import get_settings

        settings = get_settings()

    if not settings.matching:
        return DEFAULT_CONFIG

    return MatchingConfig.from_dict(settings.matching)
