"""Tests for health check endpoints."""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from serenity_crisis.main import app

CHECK_DB = "serenity_crisis.routers.health.check_database_connection"


@pytest_asyncio.fixture
async def client():
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_returns_healthy_with_db_connected(self, client):
        with patch(CHECK_DB, new_callable=AsyncMock) as mock_db:
            mock_db.return_value = True

            response = await client.get("/health")

            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["database"] == "connected"

    @pytest.mark.asyncio
    async def test_returns_degraded_when_db_disconnected(self, client):
        with patch(CHECK_DB, new_callable=AsyncMock) as mock_db:
            mock_db.return_value = False

            response = await client.get("/health")

            assert response.status_code == 503
            data = response.json()
            assert data["status"] == "degraded"
            assert data["database"] == "disconnected"

    @pytest.mark.asyncio
    async def test_reports_simulated_sms_and_stopped_sweep(self, client):
        """No SMS account in tests, and the lifespan never starts the sweep."""
        with patch(CHECK_DB, new_callable=AsyncMock, return_value=True):
            response = await client.get("/health")

        data = response.json()
        assert data["sms"] == "simulated"
        assert data["sweep"] == "stopped"


class TestLivenessProbe:
    """Tests for /health/live endpoint."""

    @pytest.mark.asyncio
    async def test_returns_alive(self, client):
        """Liveness does not touch the database."""
        with patch(CHECK_DB, new_callable=AsyncMock) as mock_db:
            response = await client.get("/health/live")

            mock_db.assert_not_called()

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}


class TestReadinessProbe:
    """Tests for /health/ready endpoint."""

    @pytest.mark.asyncio
    async def test_ready_when_db_connected(self, client):
        with patch(CHECK_DB, new_callable=AsyncMock, return_value=True):
            response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_not_ready_when_db_disconnected(self, client):
        with patch(CHECK_DB, new_callable=AsyncMock, return_value=False):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestCorrelationId:
    """The correlation middleware wraps every route, probes included."""

    @pytest.mark.asyncio
    async def test_echoes_incoming_id(self, client):
        response = await client.get(
            "/health/live", headers={"X-Correlation-ID": "crisis-test-123"}
        )

        assert response.headers["x-correlation-id"] == "crisis-test-123"

    @pytest.mark.asyncio
    async def test_generates_id_when_missing(self, client):
        response = await client.get("/health/live")

        assert len(response.headers["x-correlation-id"]) == 36
