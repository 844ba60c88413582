"""Tests for general routes."""

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from grailscan.app import create_app


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    """Create test client with the lifespan running (database initialized)."""
    with TestClient(create_app()) as test_client:
        yield test_client


def test_root_endpoint(client: TestClient) -> None:
    """Test root endpoint returns the application banner."""
    response = client.get("/api/")
    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "GrailScan"
    assert data["version"] == "0.1.0"
    assert data["status"] == "ok"
    # Trace ID should be included
    assert "trace_id" in data
    assert isinstance(data["trace_id"], str)


def test_health_endpoint(client: TestClient) -> None:
    """Test health endpoint."""
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert isinstance(data["trace_id"], str)
