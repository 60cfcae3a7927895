"""
Unit tests for health checks.
"""
from unittest.mock import AsyncMock

import pytest

from resellhub.database.connection import Database
from resellhub.monitoring.health import HealthCheck, HealthCheckError


class TestHealthCheck:
    """Test suite for HealthCheck."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_healthy(self, database: Database) -> None:
        redis_client = AsyncMock()
        health = HealthCheck(database, redis_client)

        result = await health.check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["redis"]["status"] == "healthy"
        redis_client.ping.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_degrades(self, database: Database) -> None:
        """Test Redis only backs diagnostics, so its outage is not fatal."""
        redis_client = AsyncMock()
        redis_client.ping.side_effect = ConnectionError("redis down")
        health = HealthCheck(database, redis_client)

        result = await health.check_all()

        assert result["status"] == "degraded"
        assert result["checks"]["redis"]["status"] == "unhealthy"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_outage_is_unhealthy(self, mocker) -> None:
        health = HealthCheck(mocker.MagicMock(spec=Database), None)
        mocker.patch.object(
            health, "check_database", side_effect=HealthCheckError("Database health check failed")
        )

        result = await health.readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["redis"]["status"] == "disabled"
