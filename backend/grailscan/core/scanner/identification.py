"""Identification search: turn a vision identification into ranked catalog picks."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from grailscan.core.comicvine.catalog import Catalog
from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.matching.models import Candidate
from grailscan.core.matching.rerank import rerank_candidates
from grailscan.core.metrics import identification_searches_total
from grailscan.core.utils import extract_numeric_id

logger = structlog.get_logger("grailscan.scanner.identification")


def build_queries(
    title: str | None,
    character: str | None,
    config: MatchingConfig | None = None,
) -> list[str]:
    """Queries to try in order: the title (or character), then the base title.

    "Venom: The Mace" yields ["Venom: The Mace", "Venom"]; the base title is
    only added when it is at least ``min_base_title_length`` characters.
    """
    if config is None:
        config = get_matching_config()

    primary = (title or "").strip() or (character or "").strip()
    if not primary:
        return []

    queries = [primary]
    if title and ":" in title:
        base = title.split(":", 1)[0].strip()
        if len(base) >= config.min_base_title_length and base != primary:
            queries.append(base)
    return queries


def map_search_result(
    result: dict[str, Any],
    issue: str | None,
    publisher: str | None,
    config: MatchingConfig | None = None,
) -> Candidate | None:
    """Map a raw camelCase catalog result to an identification Candidate."""
    if config is None:
        config = get_matching_config()

    candidate_id = extract_numeric_id(result.get("id"))
    if candidate_id is None:
        return None

    name = result.get("volumeName") or result.get("title") or ""
    try:
        return Candidate(
            id=candidate_id,
            resource=result.get("resource") or "issue",
            title=name,
            volume_name=name,
            volume_id=extract_numeric_id(result.get("volumeId")) or candidate_id,
            issue=result.get("issue") or issue or "",
            year=result.get("year") or None,
            publisher=result.get("publisher") or publisher or None,
            cover_url=result.get("coverUrl") or None,
            thumb_url=result.get("thumbUrl") or None,
            source="vision_identification",
            score=result.get("score") or config.identification_default_score,
        )
    except ValidationError as e:
        logger.warning("Skipping malformed catalog result", result_id=result.get("id"), error=str(e))
        return None


class IdentificationSearch:
    """Searches the catalog for an identified title and re-ranks the hits."""

    def __init__(self, catalog: Catalog, config: MatchingConfig | None = None) -> None:
        self.catalog = catalog
        self.config = config or get_matching_config()

    async def _run_query(
        self,
        query: str,
        full_title: str | None,
        issue: str | None,
        publisher: str | None,
    ) -> list[Candidate]:
        response = await self.catalog.search(query, publisher=publisher, issue_number=issue)
        if not response.ok or not response.results:
            if response.error:
                logger.warning("Catalog search reported an error", query=query, error=response.error)
            return []

        mapped = [
            candidate
            for result in response.results[: self.config.max_identification_results]
            if (candidate := map_search_result(result, issue, publisher, self.config)) is not None
        ]
        return rerank_candidates(mapped, full_title, query, self.config)

    async def _backfill_cover(self, top: Candidate, issue: str | None) -> Candidate:
        """Swap a coverless volume hit for the matching issue of that volume."""
        volume_id = top.volume_id or top.id
        issue_number = issue or self.config.backfill_default_issue
        cover = await self.catalog.lookup_issue(volume_id, issue_number)
        if cover is None:
            logger.debug("Cover backfill found nothing", volume_id=volume_id, issue=issue_number)
            return top

        logger.debug("Backfilled cover", volume_id=volume_id, issue_id=cover.id)
        return top.model_copy(
            update={
                "id": cover.id,
                "cover_url": cover.cover_url,
                "thumb_url": cover.thumb_url or cover.cover_url,
                "resource": "issue",
                "volume_id": volume_id,
                "issue": top.issue or issue_number,
            }
        )

    async def search_from_identification(
        self,
        title: str | None,
        issue: str | None,
        publisher: str | None,
        character: str | None,
    ) -> list[Candidate]:
        """Search the catalog for an identified comic.

        Args:
            title: Identified series title (may include a subtitle)
            issue: Identified issue number
            publisher: Identified publisher
            character: Identified main character, used when there is no title

        Returns:
            Re-ranked candidates (adjusted score > 0), best first; may be empty
        """
        queries = build_queries(title, character, self.config)
        if not queries:
            logger.debug("No search terms from identification")
            identification_searches_total.labels(outcome="no_terms").inc()
            return []

        full_title = title or queries[0]
        picks: list[Candidate] = []
        for query in queries:
            try:
                picks = await self._run_query(query, full_title, issue, publisher)
            except Exception as e:
                # Any failure of one query moves on to the next
                logger.warning("Identification query failed", query=query, error=str(e), error_type=type(e).__name__)
                continue
            if picks:
                logger.info("Identification search matched", query=query, results=len(picks))
                break
            logger.debug("Identification query yielded nothing usable", query=query)

        if not picks:
            identification_searches_total.labels(outcome="empty").inc()
            return []

        if not picks[0].cover_url:
            try:
                picks[0] = await self._backfill_cover(picks[0], issue)
            except Exception as e:
                logger.warning("Cover backfill failed", candidate_id=picks[0].id, error=str(e))

        identification_searches_total.labels(outcome="found").inc()
        return picks
