"""
Integration tests for health check endpoints.
"""

import pytest
from httpx import AsyncClient


class TestHealthEndpoints:
    """Tests for health check API endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test basic health check endpoint."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_api_health_check(self, client: AsyncClient):
        """Test health check under the API prefix."""
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_liveness_probe(self, client: AsyncClient):
        """Test liveness probe endpoint."""
        response = await client.get("/health/live")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness_probe(self, client: AsyncClient):
        """Test readiness probe with provider keys configured."""
        response = await client.get("/health/ready")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"]["providers"] is True

    @pytest.mark.asyncio
    async def test_readiness_without_providers(self, client: AsyncClient, monkeypatch):
        """Test readiness fails when no provider key is set."""
        from siftstream.core.config import settings

        monkeypatch.setattr(settings, "anthropic_api_key", "")
        monkeypatch.setattr(settings, "openai_api_key", "")
        monkeypatch.setattr(settings, "openrouter_api_key", "")

        response = await client.get("/health/ready")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_detailed_health_check(self, client: AsyncClient):
        """Test detailed health check endpoint."""
        response = await client.get("/health/detailed")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert "uptime" in data
        assert "system" in data
        assert data["providers"]["anthropic"] == "available"
        assert data["providers"]["openrouter"] == "unconfigured"
        assert data["sessions"]["open_handles"] == 0
        assert "circuit_breakers" in data

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient):
        """Test Prometheus metrics endpoint."""
        await client.get("/health")
        response = await client.get("/health/metrics")
        assert response.status_code == 200

        assert "text/plain" in response.headers.get("content-type", "")
        assert "# HELP" in response.text

    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient):
        """Test root endpoint."""
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_open_circuit_shown_in_detail(self, client: AsyncClient):
        """A tripped provider is reported as circuit_open."""
        from siftstream.services.circuit_breaker import get_provider_breaker

        breaker = get_provider_breaker("openai")
        for _ in range(breaker.config.failure_threshold):
            await breaker.record_failure(RuntimeError("boom"))

        data = (await client.get("/health/detailed")).json()
        assert data["providers"]["openai"] == "circuit_open"
        assert data["circuit_breakers"]["provider_openai"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_open_handles_counted(self, client: AsyncClient, sample_analysis_request):
        """Unopened stream handles show up in the session counts."""
        await client.post("/api/sift/initiate", json=sample_analysis_request)

        data = (await client.get("/health/detailed")).json()
        assert data["sessions"]["open_handles"] == 1
        assert data["sessions"]["tracked_sessions"] == 1
