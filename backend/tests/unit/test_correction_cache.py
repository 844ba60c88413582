"""Tests for the correction cache."""

from __future__ import annotations

import asyncio

import pytest
from sqlmodel import func, select

from grailscan.core.database import SessionFactory
from grailscan.core.matching.config import MatchingConfig
from grailscan.core.matching.models import Candidate
from grailscan.core.scanner.corrections import CorrectionCache, confidence_percent
from grailscan.db.models import ScanCorrection


def make_pick(id: int = 501, title: str = "Incredible Hulk") -> Candidate:
    return Candidate(
        id=id,
        title=title,
        volume_name=title,
        volume_id=50,
        issue="181",
        year=1974,
        publisher="Marvel",
        cover_url=f"https://covers.example/{id}.jpg",
        score=0.9,
    )


async def count_rows(session_factory: SessionFactory) -> int:
    async with session_factory() as session:
        result = await session.exec(select(func.count()).select_from(ScanCorrection))
        return int(result.one())


@pytest.fixture
def cache(session_factory: SessionFactory) -> CorrectionCache:
    return CorrectionCache(session_factory, MatchingConfig())


def test_confidence_percent() -> None:
    assert confidence_percent(0.704) == 70
    assert confidence_percent(0.925) in (92, 93)
    assert confidence_percent(1.5) == 100
    assert confidence_percent(-0.1) == 0


async def test_below_threshold_not_written(cache: CorrectionCache, session_factory: SessionFactory) -> None:
    assert await cache.save("HULK", make_pick(), 0.69) is False
    assert await count_rows(session_factory) == 0
    assert await cache.lookup("hulk") is False


async def test_threshold_is_inclusive(cache: CorrectionCache) -> None:
    assert await cache.save("HULK", make_pick(), 0.70) is True
    assert await cache.lookup("hulk") is True


async def test_saved_row_contents(cache: CorrectionCache) -> None:
    await cache.save("  The Incredible HULK ", make_pick(), 0.93, user_id="user-1")

    row = await cache.get("the incredible hulk")

    assert row is not None
    assert row.normalized_input == "the incredible hulk"
    assert row.input_text == "  The Incredible HULK "
    assert row.selected_comicvine_id == 501
    assert row.selected_volume_id == 50
    assert row.selected_title == "Incredible Hulk"
    assert row.selected_issue == "181"
    assert row.selected_year == 1974
    assert row.selected_publisher == "Marvel"
    assert row.original_confidence == 93
    assert row.user_id == "user-1"


@pytest.mark.parametrize(
    "text,pick",
    [
        ("", make_pick()),
        ("   ", make_pick()),
        ("HULK", None),
        ("HULK", make_pick(id=0)),
    ],
)
async def test_invalid_input_not_written(
    cache: CorrectionCache, session_factory: SessionFactory, text: str, pick: Candidate | None
) -> None:
    assert await cache.save(text, pick, 0.95) is False
    assert await count_rows(session_factory) == 0


async def test_lookup_normalizes(cache: CorrectionCache) -> None:
    await cache.save("Hulk", make_pick(), 0.9)
    assert await cache.lookup("  HULK ") is True
    assert await cache.lookup("") is False
    assert await cache.lookup(None) is False


async def test_keep_first_policy(cache: CorrectionCache, session_factory: SessionFactory) -> None:
    assert await cache.save("HULK", make_pick(501), 0.75) is True
    assert await cache.save("hulk", make_pick(999, "Hulk"), 0.99) is False

    row = await cache.get("hulk")
    assert row is not None
    assert row.selected_comicvine_id == 501
    assert await count_rows(session_factory) == 1


async def test_overwrite_policy(session_factory: SessionFactory) -> None:
    cache = CorrectionCache(session_factory, MatchingConfig(cache_write_policy="overwrite"))

    await cache.save("HULK", make_pick(501), 0.95)
    assert await cache.save("hulk", make_pick(999, "Hulk"), 0.75) is True

    row = await cache.get("hulk")
    assert row is not None
    assert row.selected_comicvine_id == 999
    assert row.original_confidence == 75
    assert await count_rows(session_factory) == 1


async def test_keep_highest_policy(session_factory: SessionFactory) -> None:
    cache = CorrectionCache(session_factory, MatchingConfig(cache_write_policy="keep_highest"))

    await cache.save("HULK", make_pick(501), 0.80)
    assert await cache.save("hulk", make_pick(600), 0.75) is False
    assert await cache.save("hulk", make_pick(700), 0.90) is True

    row = await cache.get("hulk")
    assert row is not None
    assert row.selected_comicvine_id == 700
    assert row.original_confidence == 90


async def test_concurrent_first_writes_keep_one_row(
    cache: CorrectionCache, session_factory: SessionFactory
) -> None:
    results = await asyncio.gather(
        *(cache.save("Spawn", make_pick(100 + i, "Spawn"), 0.9) for i in range(5))
    )

    assert results.count(True) == 1
    assert await count_rows(session_factory) == 1


async def test_save_survives_locked_commit(
    cache: CorrectionCache,
    session_factory: SessionFactory,
    commit_locked_once: list[int],
) -> None:
    """A lock on commit retries the whole upsert, so the reported row really exists."""
    assert await cache.save("HULK", make_pick(), 0.9) is True

    assert commit_locked_once[0] == 2
    assert await count_rows(session_factory) == 1
    stored = await cache.get("hulk")
    assert stored is not None
    assert stored.selected_comicvine_id == 501
