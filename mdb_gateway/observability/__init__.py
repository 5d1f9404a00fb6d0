"""
Observability components.

Provides contextual logging, metrics collection and health checks.
"""

from .health import HealthChecker, HealthCheckResult, HealthStatus, check_pool_health
from .logging import (
    ContextualLoggerAdapter,
    clear_correlation_id,
    clear_request_context,
    configure_logging,
    fingerprint_secret,
    get_correlation_id,
    get_logger,
    get_logging_context,
    log_operation,
    set_correlation_id,
    set_request_context,
    update_request_context,
)
from .metrics import (
    MetricsCollector,
    OperationMetrics,
    get_metrics_collector,
    record_operation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "OperationMetrics",
    "get_metrics_collector",
    "record_operation",
    # Logging
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "set_request_context",
    "update_request_context",
    "clear_request_context",
    "get_logging_context",
    "ContextualLoggerAdapter",
    "get_logger",
    "log_operation",
    "fingerprint_secret",
    "configure_logging",
    # Health
    "HealthStatus",
    "HealthCheckResult",
    "HealthChecker",
    "check_pool_health",
]
