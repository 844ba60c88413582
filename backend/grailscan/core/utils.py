"""Shared utility functions for GrailScan."""

from __future__ import annotations

import re
from typing import Any

# Unicode hyphen/dash range normalized to ASCII "-"
_UNICODE_DASHES = re.compile("[\u2010-\u2015]")


def normalize_input_text(value: str | None) -> str:
    """Normalize OCR text into a correction cache key (lowercase + trim).

    Args:
        value: Raw OCR text

    Returns:
        Normalized key, empty string for missing input
    """
    if not value:
        return ""
    return value.strip().lower()


def normalize_title(value: str | None) -> str:
    """Normalize a title for equality/substring comparisons.

    Lowercases, trims and collapses inner whitespace so "Venom:  The Mace"
    and "venom: the mace" compare equal.
    """
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip().lower())


def clean_search_text(value: str) -> str:
    """Clean free text before it is sent to the catalog search.

    Removes "#", normalizes unicode dashes, strips trailing punctuation and
    collapses whitespace.

    Args:
        value: Search text as typed or identified

    Returns:
        Cleaned search text
    """
    cleaned = value.strip().replace("#", "")
    cleaned = _UNICODE_DASHES.sub("-", cleaned)
    cleaned = re.sub(r"[.,;:!?]+$", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip()


def parse_manual_input(value: str) -> tuple[str, str | None]:
    """Split "Title 123" / "Title No. 123" into (title, issue).

    Args:
        value: Search text

    Returns:
        Tuple of (title, issue number or None)
    """
    cleaned = clean_search_text(value)
    for pattern in (r"^(.+?)\s+[Nn]o\.?\s*(\d+)$", r"^(.+?)\s+(\d+)$"):
        match = re.match(pattern, cleaned)
        if match:
            return match.group(1).strip(), match.group(2)
    return cleaned, None


def extract_numeric_id(value: Any) -> int | None:
    """Extract a numeric ID from a value (usually from ComicVine API response).

    Args:
        value: Value that may contain an ID (e.g., "4050-123456", 123456)

    Returns:
        Numeric ID as int, or None if not found
    """
    if value is None:
        return None
    text = str(value).strip()
    match = re.search(r"(\d+)$", text)
    if not match:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        return None


def extract_year(value: str | int | None) -> int | None:
    """Extract a 4-digit year from a ComicVine date or year field.

    Args:
        value: e.g. "1963-03-01", "1963", 1963

    Returns:
        Year as int or None if not found
    """
    if value is None:
        return None
    match = re.search(r"(19|20)\d{2}", str(value))
    if match:
        return int(match.group(0))
    return None
