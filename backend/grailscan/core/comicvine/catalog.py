"""Catalog search and issue lookup backed by ComicVine.

``search`` turns free text into ranked candidates by trying a series of query
variants against the volume search; ``lookup_issue`` finds the cover of a
specific issue within a volume. Both absorb ComicVine failures: search returns
an OK response with no results and ``error`` set, lookup returns None.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from grailscan.core.matching.models import CatalogSearchResponse, IssueCover
from grailscan.core.utils import (
    clean_search_text,
    extract_numeric_id,
    extract_year,
    parse_manual_input,
)

from .client import ComicVineClient, ComicVineError

logger = structlog.get_logger("grailscan.comicvine.catalog")

VOLUME_SEARCH_LIMIT = 20
MAX_ISSUE_LOOKUP_VOLUMES = 10
MAX_VOLUME_RESULTS = 15

# Score weights when an issue number is known
ISSUE_TITLE_WEIGHT = 0.40
ISSUE_PUBLISHER_WEIGHT = 0.25
ISSUE_NUMBER_WEIGHT = 0.25
ISSUE_YEAR_EXACT = 0.10
ISSUE_YEAR_CLOSE = 0.05
ALL_SIGNALS_BONUS = 0.10
ALL_SIGNALS_MIN_TITLE = 0.30
MAX_ISSUE_SCORE = 0.98

# Score weights for volume-only results
VOLUME_TITLE_WEIGHT = 0.70
VOLUME_PUBLISHER_WEIGHT = 0.30

CATALOG_ERRORS = (httpx.HTTPError, ComicVineError, ValueError, KeyError, TypeError, AttributeError)


class Catalog(Protocol):
    """What the identification search needs from a catalog."""

    async def search(
        self,
        search_text: str,
        publisher: str | None = None,
        issue_number: str | None = None,
        year: int | None = None,
    ) -> CatalogSearchResponse: ...

    async def lookup_issue(self, volume_id: int, issue_number: str) -> IssueCover | None: ...


@dataclass(frozen=True)
class QueryVariant:
    query: str
    kind: str


def generate_query_variants(search_text: str, publisher: str | None = None) -> list[QueryVariant]:
    """Build query variants, most specific first.

    full text, parsed "series issue", series only, keywords only; then each
    of those again with the publisher appended.
    """
    cleaned = clean_search_text(search_text)
    title, issue = parse_manual_input(search_text)

    variants = [QueryVariant(cleaned, "full")]

    if issue:
        parsed_query = f"{title} {issue}"
        if parsed_query != cleaned:
            variants.append(QueryVariant(parsed_query, "parsed"))

    if title != cleaned:
        variants.append(QueryVariant(title, "series"))

    fuzzy = re.sub(r"\d+", "", cleaned)
    fuzzy = re.sub(r"[^\w\s]", "", fuzzy)
    fuzzy = re.sub(r"\s+", " ", fuzzy).strip()
    if fuzzy and fuzzy != cleaned and fuzzy != title:
        variants.append(QueryVariant(fuzzy, "fuzzy"))

    if publisher:
        variants.extend(
            QueryVariant(f"{v.query} {publisher}", f"{v.kind}+publisher") for v in list(variants)
        )

    return variants


def title_word_ratio(title: str, volume_name: str) -> float:
    """Share of title words (longer than 2 chars) found in the volume name."""
    words = [w for w in title.lower().split() if len(w) > 2]
    if not words:
        return 0.0
    volume_lower = volume_name.lower()
    return sum(1 for w in words if w in volume_lower) / len(words)


def _publisher_matches(publisher: str | None, volume_publisher: str) -> bool:
    return bool(publisher) and publisher.lower() in volume_publisher.lower()


def score_issue_result(
    title: str,
    volume_name: str,
    volume_publisher: str,
    issue_number: str | None,
    requested_issue: str,
    publisher: str | None,
    cover_year: int | None,
    requested_year: int | None,
) -> float:
    """Score an issue-level hit: title, publisher, issue number and year signals."""
    title_score = title_word_ratio(title, volume_name) * ISSUE_TITLE_WEIGHT
    publisher_score = ISSUE_PUBLISHER_WEIGHT if _publisher_matches(publisher, volume_publisher) else 0.0
    issue_score = ISSUE_NUMBER_WEIGHT if issue_number == requested_issue else 0.0

    year_score = 0.0
    if requested_year and cover_year:
        diff = abs(requested_year - cover_year)
        if diff == 0:
            year_score = ISSUE_YEAR_EXACT
        elif diff <= 2:
            year_score = ISSUE_YEAR_CLOSE

    score = title_score + publisher_score + issue_score + year_score
    if title_score >= ALL_SIGNALS_MIN_TITLE and publisher_score > 0 and issue_score > 0:
        score = min(MAX_ISSUE_SCORE, score + ALL_SIGNALS_BONUS)
    return score


def score_volume_result(title: str, volume_name: str, volume_publisher: str, publisher: str | None) -> float:
    """Score a volume-level hit: title and publisher signals only."""
    score = title_word_ratio(title, volume_name) * VOLUME_TITLE_WEIGHT
    if _publisher_matches(publisher, volume_publisher):
        score += VOLUME_PUBLISHER_WEIGHT
    return score


def _publisher_name(publisher: Any) -> str:
    # Volumes carry a publisher object; some payloads flatten it to a string
    if isinstance(publisher, dict):
        return publisher.get("name") or ""
    if isinstance(publisher, str):
        return publisher
    return ""


def _image_urls(image: dict[str, Any] | None) -> tuple[str, str]:
    image = image or {}
    cover = image.get("original_url") or image.get("medium_url") or ""
    thumb = image.get("small_url") or image.get("thumb_url") or ""
    return cover, thumb


class ComicVineCatalog:
    """Catalog search and issue lookup against the ComicVine API."""

    def __init__(self, client: ComicVineClient | None):
        self.client = client

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> ComicVineClient:
        if self.client is None:
            raise ComicVineError("ComicVine API key not configured")
        return self.client

    async def _search_volumes(self, query: str) -> list[dict[str, Any]]:
        data = await self._require_client().fetch(
            "search",
            {
                "resources": "volume",
                "query": query,
                "field_list": "id,name,publisher,start_year",
                "limit": VOLUME_SEARCH_LIMIT,
            },
        )
        results = data.get("results")
        return results if isinstance(results, list) else []

    async def _issues_in_volume(self, volume_id: int, issue_number: str) -> list[dict[str, Any]]:
        data = await self._require_client().fetch(
            "issues",
            {
                "filter": f"volume:{volume_id},issue_number:{issue_number}",
                "field_list": "id,name,issue_number,volume,cover_date,image",
                "limit": 10,
            },
        )
        results = data.get("results")
        return results if isinstance(results, list) else []

    async def search(
        self,
        search_text: str,
        publisher: str | None = None,
        issue_number: str | None = None,
        year: int | None = None,
    ) -> CatalogSearchResponse:
        """Search the catalog for free text.

        Args:
            search_text: Title text, optionally with an issue number ("Hulk 181")
            publisher: Publisher hint, used for scoring and publisher query variants
            issue_number: Explicit issue number (overrides one parsed from the text)
            year: Cover year hint for issue scoring

        Returns:
            CatalogSearchResponse with camelCase result dicts sorted by score
        """
        if self.client is None:
            return CatalogSearchResponse(query=search_text, error="Catalog search not configured")

        title, parsed_issue = parse_manual_input(search_text)
        requested_issue = issue_number or parsed_issue
        results: list[dict[str, Any]] = []
        last_error: str | None = None

        for variant in generate_query_variants(search_text, publisher):
            try:
                volumes = await self._search_volumes(variant.query)
                if not volumes:
                    continue

                logger.debug(
                    "Catalog query matched volumes",
                    kind=variant.kind,
                    query=variant.query,
                    volumes=len(volumes),
                )
                if requested_issue:
                    results = await self._issue_results(
                        volumes, title, requested_issue, publisher, year
                    )
                else:
                    results = self._volume_results(volumes, title, publisher)
                break
            except CATALOG_ERRORS as e:
                logger.warning(
                    "Catalog query variant failed",
                    kind=variant.kind,
                    query=variant.query,
                    error=str(e),
                )
                last_error = str(e)
                continue

        results.sort(key=lambda r: r["score"], reverse=True)
        logger.info(
            "Catalog search complete",
            search_text=search_text,
            issue=requested_issue,
            results=len(results),
        )
        return CatalogSearchResponse(
            ok=True,
            results=results,
            query=search_text,
            error=last_error if not results else None,
        )

    async def _issue_results(
        self,
        volumes: list[dict[str, Any]],
        title: str,
        requested_issue: str,
        publisher: str | None,
        year: int | None,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for volume in volumes[:MAX_ISSUE_LOOKUP_VOLUMES]:
            volume_id = extract_numeric_id(volume.get("id"))
            if volume_id is None:
                continue
            volume_publisher = _publisher_name(volume.get("publisher")) or publisher or ""

            for issue in await self._issues_in_volume(volume_id, requested_issue):
                volume_name = (issue.get("volume") or {}).get("name") or volume.get("name") or ""
                cover_year = extract_year(issue.get("cover_date"))
                cover_url, thumb_url = _image_urls(issue.get("image"))
                results.append(
                    {
                        "id": issue.get("id"),
                        "resource": "issue",
                        "title": volume_name,
                        "issue": issue.get("issue_number"),
                        "year": cover_year,
                        "publisher": volume_publisher,
                        "volumeName": volume.get("name"),
                        "volumeId": volume_id,
                        "thumbUrl": thumb_url,
                        "coverUrl": cover_url,
                        "score": score_issue_result(
                            title,
                            volume_name,
                            volume_publisher,
                            issue.get("issue_number"),
                            requested_issue,
                            publisher,
                            cover_year,
                            year,
                        ),
                    }
                )
        return results

    def _volume_results(
        self,
        volumes: list[dict[str, Any]],
        title: str,
        publisher: str | None,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for volume in volumes[:MAX_VOLUME_RESULTS]:
            volume_name = volume.get("name") or ""
            volume_publisher = _publisher_name(volume.get("publisher")) or publisher or ""
            results.append(
                {
                    "id": volume.get("id"),
                    "resource": "volume",
                    "title": volume_name,
                    "issue": None,
                    "year": extract_year(volume.get("start_year")),
                    "publisher": volume_publisher,
                    "volumeName": volume_name,
                    "volumeId": volume.get("id"),
                    "thumbUrl": "",
                    "coverUrl": "",
                    "score": score_volume_result(title, volume_name, volume_publisher, publisher),
                }
            )
        return results

    async def lookup_issue(self, volume_id: int, issue_number: str) -> IssueCover | None:
        """Find the cover for one issue of a volume; None when not found or on failure."""
        if self.client is None:
            return None

        try:
            issues = await self._issues_in_volume(volume_id, issue_number)
        except CATALOG_ERRORS as e:
            logger.warning(
                "Issue lookup failed",
                volume_id=volume_id,
                issue_number=issue_number,
                error=str(e),
            )
            return None

        if not issues:
            logger.debug("Issue not found", volume_id=volume_id, issue_number=issue_number)
            return None

        issue = issues[0]
        issue_id = extract_numeric_id(issue.get("id"))
        cover_url, _ = _image_urls(issue.get("image"))
        if issue_id is None or not cover_url:
            return None

        thumb_url = (issue.get("image") or {}).get("thumb_url")
        return IssueCover(id=issue_id, cover_url=cover_url, thumb_url=thumb_url)
