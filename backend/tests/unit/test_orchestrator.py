"""Tests for vision match orchestration and the override helper."""

from __future__ import annotations

from collections.abc import Sequence

import pytest

from grailscan.core.matching.config import MatchingConfig
from grailscan.core.matching.models import (
    Candidate,
    CatalogSearchResponse,
    IssueCover,
    TriggerReason,
    VisionCandidate,
    VisionMatchResult,
)
from grailscan.core.scanner.identification import IdentificationSearch
from grailscan.core.scanner.orchestrator import VisionMatchOrchestrator, apply_vision_override
from grailscan.core.vision.base import VisionAnalyzer, VisionAnalyzerError

IMAGE = "data:image/jpeg;base64,AAAA"


class FakeAnalyzer(VisionAnalyzer):
    """Returns canned results and records calls."""

    def __init__(
        self,
        compare_result: VisionMatchResult | Exception | None = None,
        identify_result: VisionMatchResult | Exception | None = None,
    ) -> None:
        self.compare_result = compare_result or VisionMatchResult()
        self.identify_result = identify_result or VisionMatchResult(identification_mode=True)
        self.compared: list[list[VisionCandidate]] = []
        self.identified = 0

    async def compare(
        self,
        image: str,
        candidates: Sequence[VisionCandidate],
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        self.compared.append(list(candidates))
        if isinstance(self.compare_result, Exception):
            raise self.compare_result
        return self.compare_result

    async def identify(
        self,
        image: str,
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        self.identified += 1
        if isinstance(self.identify_result, Exception):
            raise self.identify_result
        return self.identify_result


class StaticCatalog:
    def __init__(self, results: list[dict] | None = None) -> None:
        self.results = results or []
        self.queries: list[str] = []

    async def search(self, search_text, publisher=None, issue_number=None, year=None):
        self.queries.append(search_text)
        return CatalogSearchResponse(results=self.results, query=search_text)

    async def lookup_issue(self, volume_id: int, issue_number: str) -> IssueCover | None:
        return None


HULK_RESULT = {
    "id": 501,
    "title": "Incredible Hulk",
    "volumeName": "Incredible Hulk",
    "volumeId": 50,
    "issue": "181",
    "publisher": "Marvel",
    "year": 1974,
    "coverUrl": "https://covers.example/501.jpg",
}


def identified(title: str | None = "Incredible Hulk", confidence: float = 0.9) -> VisionMatchResult:
    return VisionMatchResult(
        identification_mode=True,
        identified_title=title,
        identified_issue="181",
        identified_publisher="Marvel",
        identified_character="Hulk",
        identification_confidence=confidence,
    )


def make_orchestrator(
    analyzer: VisionAnalyzer, catalog: StaticCatalog, config: MatchingConfig | None = None
) -> VisionMatchOrchestrator:
    config = config or MatchingConfig()
    return VisionMatchOrchestrator(analyzer, IdentificationSearch(catalog, config), config)


def strong_candidates(count: int = 3) -> list[Candidate]:
    return [
        Candidate(id=100 + i, title=f"Spider-Man {i}", issue=str(i), score=0.9 - i * 0.01)
        for i in range(count)
    ]


class TestIdentificationMode:
    async def test_weak_candidates_use_identification(self) -> None:
        analyzer = FakeAnalyzer(identify_result=identified())
        catalog = StaticCatalog([HULK_RESULT])
        orchestrator = make_orchestrator(analyzer, catalog)

        result = await orchestrator.run_vision_match(
            IMAGE, [Candidate(id=1, title="HULK", score=0.3)], TriggerReason.SANITY_CHECK
        )

        assert result is not None
        assert analyzer.identified == 1
        assert analyzer.compared == []
        assert catalog.queries == ["Incredible Hulk"]
        assert result.best_match_comic_id == 501
        assert result.similarity_score == 0.85
        assert result.vision_override_applied is True
        assert result.identification_mode is True
        assert result.identified_character == "Hulk"

    async def test_no_candidates_use_identification(self) -> None:
        analyzer = FakeAnalyzer(identify_result=identified())
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        result = await orchestrator.run_vision_match(IMAGE, [], TriggerReason.AUTO_LOW_CONFIDENCE)

        assert result is not None
        assert result.best_match_comic_id == 501

    async def test_empty_search_falls_through_to_comparison(self) -> None:
        analyzer = FakeAnalyzer(
            compare_result=VisionMatchResult(best_match_comic_id=1, similarity_score=0.6),
            identify_result=identified(),
        )
        orchestrator = make_orchestrator(analyzer, StaticCatalog([]))
        candidates = [Candidate(id=1, title="Hulk", score=0.2)]

        result = await orchestrator.run_vision_match(IMAGE, candidates, TriggerReason.VISION_FIRST)

        assert analyzer.identified == 1
        assert len(analyzer.compared) == 1
        assert result is not None
        assert result.vision_override_applied is False

    async def test_limit_reached_during_identification(self) -> None:
        analyzer = FakeAnalyzer(identify_result=VisionMatchResult.quota_exhausted())
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        result = await orchestrator.run_vision_match(IMAGE, [], TriggerReason.VISION_FIRST)

        assert result is not None
        assert result.limit_reached is True
        assert analyzer.compared == []

    async def test_run_vision_identification_nothing_named(self) -> None:
        analyzer = FakeAnalyzer(
            identify_result=VisionMatchResult(identification_mode=True, identification_confidence=0.2)
        )
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        assert await orchestrator.run_vision_identification(IMAGE) is None

    async def test_run_vision_identification_transport_error(self) -> None:
        analyzer = FakeAnalyzer(identify_result=VisionAnalyzerError("connection refused"))
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        assert await orchestrator.run_vision_identification(IMAGE) is None

    async def test_run_vision_identification_character_only(self) -> None:
        analyzer = FakeAnalyzer(identify_result=identified(title=None))
        catalog = StaticCatalog([HULK_RESULT])
        orchestrator = make_orchestrator(analyzer, catalog)

        outcome = await orchestrator.run_vision_identification(IMAGE)

        assert outcome is not None
        assert catalog.queries == ["Hulk"]
        assert outcome.picks[0].id == 501
        assert outcome.identified_character == "Hulk"


class TestComparisonMode:
    async def test_override_at_threshold(self) -> None:
        analyzer = FakeAnalyzer(
            compare_result=VisionMatchResult(best_match_comic_id=101, similarity_score=0.85)
        )
        orchestrator = make_orchestrator(analyzer, StaticCatalog())

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.vision_override_applied is True

    async def test_no_override_below_threshold(self) -> None:
        analyzer = FakeAnalyzer(
            compare_result=VisionMatchResult(
                best_match_comic_id=101, similarity_score=0.84, vision_override_applied=True
            )
        )
        orchestrator = make_orchestrator(analyzer, StaticCatalog())

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.vision_override_applied is False

    async def test_no_override_without_best_match(self) -> None:
        analyzer = FakeAnalyzer(compare_result=VisionMatchResult(similarity_score=0.95))
        orchestrator = make_orchestrator(analyzer, StaticCatalog())

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.vision_override_applied is False

    async def test_sends_at_most_fifteen_reduced_candidates(self) -> None:
        analyzer = FakeAnalyzer()
        orchestrator = make_orchestrator(analyzer, StaticCatalog())

        await orchestrator.run_vision_match(IMAGE, strong_candidates(20), TriggerReason.VISION_FIRST)

        sent = analyzer.compared[0]
        assert len(sent) == 15
        assert all(isinstance(c, VisionCandidate) for c in sent)
        assert sent[0].id == 100

    async def test_transport_error_returns_none(self) -> None:
        analyzer = FakeAnalyzer(compare_result=VisionAnalyzerError("timeout"))
        orchestrator = make_orchestrator(analyzer, StaticCatalog())

        assert (
            await orchestrator.run_vision_match(IMAGE, strong_candidates(), TriggerReason.VISION_FIRST)
            is None
        )

    async def test_limit_reached_passes_through(self) -> None:
        analyzer = FakeAnalyzer(compare_result=VisionMatchResult.quota_exhausted())
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result == VisionMatchResult.quota_exhausted()
        assert analyzer.identified == 0

    async def test_service_fallback_reshaped(self) -> None:
        analyzer = FakeAnalyzer(compare_result=identified())
        orchestrator = make_orchestrator(analyzer, StaticCatalog([HULK_RESULT]))

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.best_match_comic_id == 501
        assert result.similarity_score == 0.85
        assert result.vision_override_applied is True
        assert result.identification_mode is True

    async def test_service_fallback_without_hits_keeps_confident_fields(self) -> None:
        analyzer = FakeAnalyzer(compare_result=identified(confidence=0.7))
        orchestrator = make_orchestrator(analyzer, StaticCatalog([]))

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.best_match_comic_id is None
        assert result.identified_title == "Incredible Hulk"
        assert result.identified_issue == "181"

    async def test_service_fallback_without_hits_drops_weak_fields(self) -> None:
        analyzer = FakeAnalyzer(compare_result=identified(confidence=0.69))
        orchestrator = make_orchestrator(analyzer, StaticCatalog([]))

        result = await orchestrator.run_vision_match(
            IMAGE, strong_candidates(), TriggerReason.VISION_FIRST
        )

        assert result is not None
        assert result.identified_title is None
        assert result.identification_confidence == 0.69


class TestApplyVisionOverride:
    def test_comparison_override_retags_candidate(self) -> None:
        candidates = strong_candidates()
        result = VisionMatchResult(
            best_match_comic_id=101, similarity_score=0.9, vision_override_applied=True
        )

        pick = apply_vision_override(candidates[0], candidates, result)

        assert pick is not None
        assert pick.id == 101
        assert pick.source == "vision_comparison"
        assert pick.score == 0.9

    def test_identification_override_builds_pick(self) -> None:
        result = VisionMatchResult(identification_mode=True).with_pick(
            Candidate(id=501, title="Incredible Hulk", issue="181", cover_url="https://c/1.jpg"),
            0.85,
        )

        pick = apply_vision_override(None, [], result)

        assert pick is not None
        assert pick.id == 501
        assert pick.source == "vision_identification"
        assert pick.cover_url == "https://c/1.jpg"

    @pytest.mark.parametrize(
        "result",
        [
            VisionMatchResult(best_match_comic_id=101, similarity_score=0.6),
            VisionMatchResult.quota_exhausted(),
        ],
    )
    def test_no_override_keeps_current(self, result: VisionMatchResult) -> None:
        candidates = strong_candidates()
        assert apply_vision_override(candidates[0], candidates, result) is candidates[0]
