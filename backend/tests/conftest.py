"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from grailscan.core.config import reload_settings
from grailscan.core.database import (
    SessionFactory,
    create_database_engine,
    create_session_factory,
    init_database,
)
from grailscan.core.matching.config import MatchingConfig


@pytest.fixture(autouse=True)
def reset_prometheus_registry() -> Iterator[None]:
    """Reset Prometheus registry before each test to avoid duplicate metric registration.

    This is needed because setup_metrics() registers metrics in the global Prometheus
    registry, and when multiple tests create apps, they would try to register the same
    metrics multiple times, causing "Duplicated timeseries" errors.
    """
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        REGISTRY.unregister(collector)

    yield

    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        REGISTRY.unregister(collector)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point GRAILSCAN_DATA_DIR at a temporary directory and reload settings."""
    directory = tmp_path / "data"
    directory.mkdir()
    monkeypatch.setenv("GRAILSCAN_DATA_DIR", str(directory))
    monkeypatch.delenv("GRAILSCAN_COMICVINE_API_KEY", raising=False)
    monkeypatch.delenv("GRAILSCAN_AI_GATEWAY_API_KEY", raising=False)
    monkeypatch.delenv("GRAILSCAN_VISION_SERVICE_URL", raising=False)
    reload_settings()

    yield directory

    monkeypatch.undo()
    reload_settings()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[SessionFactory]:
    """Session factory over a fresh SQLite database with all tables created."""
    engine = create_database_engine(tmp_path / "test.db", echo=False)
    await init_database(engine)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def matching_config() -> MatchingConfig:
    """Default matching config with the legacy OCR-trust rules enabled."""
    return MatchingConfig(vision_first_mode=False)


@pytest.fixture
def commit_locked_once(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    """Make the first session commit fail with a SQLite lock error.

    Returns a one-element list holding the number of commit calls so far.
    """
    original_commit = SQLModelAsyncSession.commit
    calls = [0]

    async def commit(self: SQLModelAsyncSession) -> None:
        calls[0] += 1
        if calls[0] == 1:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        await original_commit(self)

    monkeypatch.setattr(SQLModelAsyncSession, "commit", commit)
    return calls
