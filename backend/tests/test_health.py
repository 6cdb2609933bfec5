"""
Tests for health check endpoints.

Tests:
- /health - Basic health check
- /health/ready - Readiness check with DB (and Redis when it backs rate limiting)
- /health/live - Liveness check
- /health/detailed - System metrics and patrol loop status
"""

import pytest
from unittest.mock import patch, AsyncMock
from datetime import datetime

from coordinator.config import settings


@pytest.fixture(autouse=True)
def health_engine(engine, monkeypatch):
    """Point dependency checks at the in-memory test database."""
    monkeypatch.setattr("coordinator.api.health.engine", engine)


@pytest.fixture
def redis_rate_limits(monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_storage_uri", "redis://localhost:6379/0")


class TestBasicHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_healthy_status(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "coordinator"
        assert data["version"] == settings.version
        assert "environment" in data

    @pytest.mark.asyncio
    async def test_health_returns_iso_timestamp(self, client):
        response = await client.get("/health")

        timestamp = datetime.fromisoformat(response.json()["timestamp"])
        assert timestamp is not None


class TestLivenessEndpoint:
    """Tests for /health/live endpoint."""

    @pytest.mark.asyncio
    async def test_liveness_always_returns_200(self, client):
        for _ in range(3):
            response = await client.get("/health/live")
            assert response.status_code == 200
            assert response.json()["status"] == "alive"


class TestReadinessEndpoint:
    """Tests for /health/ready endpoint."""

    @pytest.mark.asyncio
    async def test_ready_with_memory_rate_limits_checks_database_only(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"database": True}

    @pytest.mark.asyncio
    async def test_ready_when_redis_healthy(self, client, redis_rate_limits):
        with patch("redis.asyncio.from_url") as mock_from_url:
            mock_client = AsyncMock()
            mock_client.ping = AsyncMock(return_value=True)
            mock_from_url.return_value = mock_client

            response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True, "redis": True}
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_returns_503_when_redis_unhealthy(self, client, redis_rate_limits):
        with patch("redis.asyncio.from_url") as mock_from_url:
            mock_client = AsyncMock()
            mock_client.ping = AsyncMock(side_effect=ConnectionError("Connection refused"))
            mock_from_url.return_value = mock_client

            response = await client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "not_ready"
        assert data["checks"]["redis"] is False
        assert "Connection refused" in data["errors"]["redis"]


class TestDetailedHealthEndpoint:
    """Tests for /health/detailed endpoint."""

    @pytest.mark.asyncio
    async def test_detailed_includes_system_metrics_and_patrol(self, client):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert "cpu_percent" in data["system"]
        assert "memory_percent" in data["system"]
        assert "disk_percent" in data["system"]
        assert data["patrol"]["enabled"] == settings.patrol_enabled
        # The lifespan (and so the loop) does not run under ASGITransport
        assert data["patrol"]["running"] is False

    @pytest.mark.asyncio
    async def test_detailed_returns_503_when_unhealthy(self, client, redis_rate_limits):
        with patch("redis.asyncio.from_url") as mock_from_url:
            mock_client = AsyncMock()
            mock_client.ping = AsyncMock(side_effect=ConnectionError("Redis down"))
            mock_from_url.return_value = mock_client

            response = await client.get("/health/detailed")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestMetricsEndpoint:

    @pytest.mark.asyncio
    async def test_metrics_exposes_coordinator_counters(self, client):
        await client.get("/health")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "coordinator_http_requests_total" in response.text
