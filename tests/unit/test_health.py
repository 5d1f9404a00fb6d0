"""
Unit tests for health checks.
"""

import pytest

from mdb_gateway.observability import (
    HealthChecker,
    HealthCheckResult,
    HealthStatus,
    check_pool_health,
)


def _stats(active: int, maximum: int = 10):
    return lambda: {"active_connections": active, "max_connections": maximum}


@pytest.mark.unit
class TestPoolHealth:
    """Pool usage thresholds."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "active, expected",
        [
            (0, HealthStatus.HEALTHY),
            (8, HealthStatus.HEALTHY),
            (9, HealthStatus.DEGRADED),
            (10, HealthStatus.UNHEALTHY),
        ],
    )
    async def test_thresholds(self, active, expected):
        result = await check_pool_health(_stats(active))
        assert result.status is expected
        assert result.details["active_connections"] == active

    @pytest.mark.asyncio
    async def test_async_stats(self):
        async def stats():
            return {"active_connections": 1, "max_connections": 4}

        result = await check_pool_health(stats)
        assert result.details["pool_usage_percent"] == 25.0

    @pytest.mark.asyncio
    async def test_no_stats(self):
        result = await check_pool_health(None)
        assert result.status is HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_broken_stats(self):
        result = await check_pool_health(lambda: None)
        assert result.status is HealthStatus.UNKNOWN
        assert "Failed" in result.message

    @pytest.mark.asyncio
    async def test_live_pool(self, pool):
        await pool.open("mongodb://localhost:27017")
        result = await check_pool_health(pool.stats)
        assert result.status is HealthStatus.HEALTHY
        assert result.details["max_connections"] == 3


@pytest.mark.unit
class TestHealthChecker:
    """Folding individual checks into an overall status."""

    @staticmethod
    def _check(status: HealthStatus, name: str = "check"):
        async def check():
            return HealthCheckResult(name=name, status=status, message=status.value)

        return check

    @pytest.mark.asyncio
    async def test_all_healthy(self):
        checker = HealthChecker()
        checker.register_check(self._check(HealthStatus.HEALTHY, "a"))
        checker.register_check(self._check(HealthStatus.HEALTHY, "b"))

        result = await checker.check_all()

        assert result["status"] == "healthy"
        assert [c["name"] for c in result["checks"]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_worst_status_wins(self):
        checker = HealthChecker()
        checker.register_check(self._check(HealthStatus.DEGRADED))
        checker.register_check(self._check(HealthStatus.UNHEALTHY))

        assert (await checker.check_all())["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_failing_check_is_unknown(self):
        async def exploding():
            raise RuntimeError("boom")

        checker = HealthChecker()
        checker.register_check(exploding)

        result = await checker.check_all()

        assert result["status"] == "unknown"
        assert result["checks"][0]["name"] == "exploding"
        assert "boom" in result["checks"][0]["message"]
