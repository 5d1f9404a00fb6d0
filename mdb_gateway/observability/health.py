"""
Health check utilities for MDB_GATEWAY.

Provides health check functions for the connection pool and the pooled
upstream connections.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

POOL_DEGRADED_PERCENT = 80
POOL_UNHEALTHY_PERCENT = 100


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


HealthCheck = Callable[[], Awaitable[HealthCheckResult]]


class HealthChecker:
    """
    Runs registered health checks and folds them into one overall status.
    """

    def __init__(self) -> None:
        self._checks: list[HealthCheck] = []

    def register_check(self, check_func: HealthCheck) -> None:
        """
        Register a health check function.

        Args:
            check_func: Async function that returns HealthCheckResult
        """
        self._checks.append(check_func)

    async def check_all(self) -> dict[str, Any]:
        """
        Run all registered health checks.

        Returns:
            Dictionary with overall status and individual check results
        """
        results: list[HealthCheckResult] = []

        for check_func in self._checks:
            name = getattr(check_func, "__name__", "check")
            try:
                results.append(await check_func())
            except (RuntimeError, ValueError, TypeError, AttributeError, OSError) as e:
                logger.error(f"Health check {name} failed: {e}", exc_info=True)
                results.append(
                    HealthCheckResult(
                        name=name,
                        status=HealthStatus.UNKNOWN,
                        message=f"Check failed: {e}",
                    )
                )

        statuses = [r.status for r in results]
        if HealthStatus.UNHEALTHY in statuses:
            overall_status = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall_status = HealthStatus.DEGRADED
        elif all(s == HealthStatus.HEALTHY for s in statuses):
            overall_status = HealthStatus.HEALTHY
        else:
            overall_status = HealthStatus.UNKNOWN

        return {
            "status": overall_status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": [r.to_dict() for r in results],
        }


async def check_pool_health(
    get_pool_stats_func: Callable[[], Any] | None = None,
) -> HealthCheckResult:
    """
    Check connection pool health from its statistics.

    The pool is degraded above 80% usage and unhealthy when full, since a
    full pool rejects every new connection.

    Args:
        get_pool_stats_func: Function (sync or async) returning pool stats

    Returns:
        HealthCheckResult
    """
    if get_pool_stats_func is None:
        return HealthCheckResult(
            name="connection_pool",
            status=HealthStatus.UNKNOWN,
            message="Pool statistics not available",
        )

    try:
        if asyncio.iscoroutinefunction(get_pool_stats_func):
            stats = await get_pool_stats_func()
        else:
            stats = get_pool_stats_func()

        max_connections = stats.get("max_connections") or 0
        active = stats.get("active_connections", 0)
        usage_percent = (active / max_connections * 100) if max_connections else 0.0
        details = {
            "active_connections": active,
            "max_connections": max_connections,
            "pool_usage_percent": round(usage_percent, 1),
        }

        if usage_percent >= POOL_UNHEALTHY_PERCENT:
            status = HealthStatus.UNHEALTHY
            message = f"Connection pool is full: {active}/{max_connections}"
        elif usage_percent > POOL_DEGRADED_PERCENT:
            status = HealthStatus.DEGRADED
            message = f"Connection pool usage is high: {usage_percent:.1f}%"
        else:
            status = HealthStatus.HEALTHY
            message = f"Connection pool is healthy: {usage_percent:.1f}% usage"

        return HealthCheckResult(
            name="connection_pool", status=status, message=message, details=details
        )
    except (AttributeError, TypeError, ValueError, KeyError, RuntimeError) as e:
        return HealthCheckResult(
            name="connection_pool",
            status=HealthStatus.UNKNOWN,
            message=f"Failed to check pool health: {e}",
        )
