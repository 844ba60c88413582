"""Tests for the vision-match service and the AI gateway client."""

from __future__ import annotations

import json
from collections.abc import Callable
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

import httpx
import pytest
from sqlmodel import select

from grailscan.core.database import SessionFactory, create_database_engine, create_session_factory
from grailscan.core.matching.config import MatchingConfig
from grailscan.core.matching.models import (
    Candidate,
    CatalogSearchResponse,
    TriggerReason,
    VisionCandidate,
    VisionMatchRequest,
)
from grailscan.core.scanner.identification import IdentificationSearch
from grailscan.core.scanner.orchestrator import VisionMatchOrchestrator
from grailscan.core.vision.base import VisionAnalyzerError
from grailscan.core.vision.gateway import AIGateway, AIGatewayError, as_data_url
from grailscan.core.vision.service import (
    UNAVAILABLE_ERROR,
    VisionMatchService,
    VisionNotConfiguredError,
    month_start_epoch,
)
from grailscan.db.models import ScanVisionUsage

GATEWAY_URL = "https://gateway.example/v1/chat/completions"


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class GatewayStub:
    """Mock transport handler replying with queued model contents."""

    def __init__(self, *contents: str | httpx.Response) -> None:
        self.contents = list(contents)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        reply = self.contents.pop(0)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=completion(reply))


def make_gateway(handler: Callable[[httpx.Request], httpx.Response]) -> AIGateway:
    return AIGateway(
        url=GATEWAY_URL,
        api_key="test-key",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


def candidates(score: float = 0.8) -> list[VisionCandidate]:
    return [
        VisionCandidate(id=11, title="Amazing Spider-Man", issue="300", publisher="Marvel", year=1988, score=score),
        VisionCandidate(id=12, title="Spectacular Spider-Man", issue="107", score=score - 0.1),
    ]


@pytest.fixture
async def tableless_session_factory(tmp_path: Path) -> AsyncIterator[SessionFactory]:
    """Sessions over a database file that was never initialized."""
    engine = create_database_engine(tmp_path / "empty.db", echo=False)
    yield create_session_factory(engine)
    await engine.dispose()


class EmptyCatalog:
    async def search(self, search_text, publisher=None, issue_number=None, year=None):
        return CatalogSearchResponse(results=[], query=search_text)

    async def lookup_issue(self, volume_id, issue_number):
        return None


async def usage_rows(session_factory: SessionFactory) -> list[ScanVisionUsage]:
    async with session_factory() as session:
        result = await session.exec(select(ScanVisionUsage))
        return list(result.all())


class TestGateway:
    def test_as_data_url(self) -> None:
        assert as_data_url("QUJD") == "data:image/jpeg;base64,QUJD"
        assert as_data_url("data:image/png;base64,QUJD") == "data:image/png;base64,QUJD"

    async def test_payload_and_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion("hello"))

        async with make_gateway(handler) as gateway:
            content = await gateway.complete("system", "user", "QUJD")

        assert content == "hello"
        assert seen[0].headers["Authorization"] == "Bearer test-key"
        body = json.loads(seen[0].content)
        assert body["model"] == "test-model"
        assert body["messages"][0] == {"role": "system", "content": "system"}
        image_part = body["messages"][1]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,QUJD"

    async def test_error_status(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(429, text="slow down"))

        with pytest.raises(AIGatewayError) as exc_info:
            await gateway.complete("system", "user", "QUJD")

        assert exc_info.value.status_code == 429
        await gateway.aclose()

    async def test_invalid_json(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(AIGatewayError):
            await gateway.complete("system", "user", "QUJD")
        await gateway.aclose()

    async def test_no_choices(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, json={"choices": []}))
        assert await gateway.complete("system", "user", "QUJD") == ""
        await gateway.aclose()


class TestVisionMatchService:
    async def test_not_configured(self, session_factory: SessionFactory) -> None:
        service = VisionMatchService(None, session_factory)

        with pytest.raises(VisionNotConfiguredError):
            await service.analyze(VisionMatchRequest(image="QUJD"))

    async def test_comparison_override(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub('{"best_match_index": 1, "similarity_score": 0.92, "reasoning": "same"}')
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(
            VisionMatchRequest(
                image="QUJD",
                candidates=candidates(),
                triggered_by=TriggerReason.VISION_FIRST,
                scan_event_id="scan-1",
            )
        )

        assert result.best_match_comic_id == 11
        assert result.best_match_title == "Amazing Spider-Man"
        assert result.similarity_score == 0.92
        assert result.vision_override_applied is True
        assert result.candidates_compared == 2
        assert result.identification_mode is False

        rows = await usage_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].triggered_by == "vision_first"
        assert rows[0].matched_comic_id == 11
        assert rows[0].scan_event_id == "scan-1"

    async def test_comparison_without_override(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub('{"best_match_index": 2, "similarity_score": 0.7}')
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(VisionMatchRequest(image="QUJD", candidates=candidates()))

        assert result.best_match_comic_id == 12
        assert result.vision_override_applied is False
        assert len(stub.requests) == 1

    async def test_weak_comparison_falls_back_to_identification(
        self, session_factory: SessionFactory
    ) -> None:
        stub = GatewayStub(
            '{"best_match_index": 0, "similarity_score": 0.2}',
            '{"title": "Venom", "issue": "1", "publisher": "Marvel", "character": "Venom", "confidence": 0.8}',
        )
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(VisionMatchRequest(image="QUJD", candidates=candidates()))

        assert result.identification_mode is True
        assert result.identified_title == "Venom"
        assert result.identification_confidence == 0.8
        assert result.candidates_compared == 2
        assert result.best_match_comic_id is None
        # Second call carries the weak candidate titles as a hint
        hint_text = stub.requests[1]["messages"][1]["content"][0]["text"]
        assert "Amazing Spider-Man" in hint_text

    async def test_weak_candidates_skip_comparison(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub('{"title": "Spawn", "confidence": 0.9}')
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(
            VisionMatchRequest(image="QUJD", candidates=candidates(score=0.45))
        )

        assert len(stub.requests) == 1
        assert "no list of candidates" in stub.requests[0]["messages"][0]["content"]
        assert result.identification_mode is True
        assert result.identified_title == "Spawn"

    async def test_forced_identification(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub('{"title": null, "character": "Batman", "confidence": 0.6}')
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.identify("QUJD", TriggerReason.USER_CORRECTION)

        assert result.identified_title is None
        assert result.identified_character == "Batman"
        assert result.has_identification is True

    async def test_gateway_error_returns_error_result(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub(httpx.Response(503, text="down"))
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(VisionMatchRequest(image="QUJD", candidates=candidates()))

        assert result.error == UNAVAILABLE_ERROR
        assert result.best_match_comic_id is None
        assert result.limit_reached is False

    async def test_unparseable_identification(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub("I am not sure what this is.")
        service = VisionMatchService(make_gateway(stub), session_factory)

        result = await service.analyze(VisionMatchRequest(image="QUJD"))

        assert result.identification_mode is True
        assert result.has_identification is False
        assert result.identification_confidence == 0.0

    async def test_monthly_limit(self, session_factory: SessionFactory) -> None:
        stub = GatewayStub(
            '{"title": "Spawn", "confidence": 0.9}',
            '{"title": "Spawn", "confidence": 0.9}',
        )
        service = VisionMatchService(make_gateway(stub), session_factory, monthly_limit=2)

        await service.analyze(VisionMatchRequest(image="QUJD"))
        await service.analyze(VisionMatchRequest(image="QUJD"))
        blocked = await service.analyze(VisionMatchRequest(image="QUJD"))
        still_blocked = await service.analyze(VisionMatchRequest(image="QUJD"))

        assert blocked.limit_reached is True
        assert blocked.identified_title is None
        assert still_blocked.limit_reached is True
        assert len(stub.requests) == 2
        assert await service.monthly_usage() == 2
        rows = await usage_rows(session_factory)
        assert sum(1 for row in rows if row.limit_reached) == 2

    async def test_old_usage_not_counted(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            session.add(ScanVisionUsage(triggered_by="vision_first", created_at=month_start_epoch() - 60))
            await session.commit()

        service = VisionMatchService(None, session_factory, monthly_limit=1)
        assert await service.monthly_usage() == 0
        assert await service.is_available() is True


    async def test_usage_recorded_after_locked_commit(
        self, session_factory: SessionFactory, commit_locked_once: list[int]
    ) -> None:
        stub = GatewayStub('{"title": "Spawn", "issue_number": "1", "confidence": 0.9}')
        service = VisionMatchService(make_gateway(stub), session_factory, monthly_limit=5)

        await service.analyze(VisionMatchRequest(image="QUJD"))

        assert commit_locked_once[0] == 2
        rows = await usage_rows(session_factory)
        assert len(rows) == 1
        assert await service.monthly_usage() == 1

    async def test_unreadable_usage_raises_analyzer_error(
        self, tableless_session_factory: SessionFactory
    ) -> None:
        stub = GatewayStub()
        service = VisionMatchService(make_gateway(stub), tableless_session_factory, monthly_limit=5)

        with pytest.raises(VisionAnalyzerError):
            await service.analyze(VisionMatchRequest(image="QUJD"))
        assert stub.requests == []


async def test_orchestrator_returns_none_when_usage_unreadable(
    tableless_session_factory: SessionFactory,
) -> None:
    """Database failures inside the service reach the scanner as a plain fallback."""
    config = MatchingConfig()
    service = VisionMatchService(
        make_gateway(GatewayStub()), tableless_session_factory, config=config, monthly_limit=5
    )
    orchestrator = VisionMatchOrchestrator(
        service, IdentificationSearch(EmptyCatalog(), config), config
    )

    result = await orchestrator.run_vision_match(
        "QUJD", [Candidate(id=1, title="Saga", score=0.9)], TriggerReason.VISION_FIRST
    )

    assert result is None

def test_month_start_epoch() -> None:
    now = datetime(2024, 3, 17, 15, 30, tzinfo=UTC)
    assert month_start_epoch(now) == int(datetime(2024, 3, 1, tzinfo=UTC).timestamp())
