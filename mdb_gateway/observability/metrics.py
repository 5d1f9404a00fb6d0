"""
Metrics collection for MDB_GATEWAY.

Records per-operation counts, latencies and failures for gateway routes and
pool activity, keyed by operation name and optional tags.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class OperationMetrics:
    """Metrics for a single operation."""

    operation_name: str
    count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    error_count: int = 0
    last_execution: datetime | None = None

    @property
    def avg_duration_ms(self) -> float:
        """Calculate average duration in milliseconds."""
        return self.total_duration_ms / self.count if self.count > 0 else 0.0

    @property
    def error_rate(self) -> float:
        """Calculate error rate as percentage."""
        return (self.error_count / self.count * 100) if self.count > 0 else 0.0

    def record(self, duration_ms: float, success: bool = True) -> None:
        """Record a single operation execution."""
        self.count += 1
        self.total_duration_ms += duration_ms
        self.min_duration_ms = min(self.min_duration_ms, duration_ms)
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if not success:
            self.error_count += 1
        self.last_execution = datetime.now(timezone.utc)

    def merge(self, other: "OperationMetrics") -> None:
        """Fold another metric for the same operation into this one."""
        self.count += other.count
        self.total_duration_ms += other.total_duration_ms
        self.min_duration_ms = min(self.min_duration_ms, other.min_duration_ms)
        self.max_duration_ms = max(self.max_duration_ms, other.max_duration_ms)
        self.error_count += other.error_count
        if other.last_execution and (
            self.last_execution is None or other.last_execution > self.last_execution
        ):
            self.last_execution = other.last_execution

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "operation": self.operation_name,
            "count": self.count,
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "min_duration_ms": (
                round(self.min_duration_ms, 2) if self.min_duration_ms != float("inf") else 0.0
            ),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "error_count": self.error_count,
            "error_rate_percent": round(self.error_rate, 2),
            "last_execution": (self.last_execution.isoformat() if self.last_execution else None),
        }


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Metrics are kept in LRU order and the least recently touched entry is
    evicted once ``max_metrics`` distinct keys are tracked.
    """

    def __init__(self, max_metrics: int = 10000):
        self._metrics: OrderedDict[str, OperationMetrics] = OrderedDict()
        self._lock = threading.Lock()
        self._max_metrics = max_metrics

    @staticmethod
    def _key(operation_name: str, tags: dict[str, Any]) -> str:
        if not tags:
            return operation_name
        tag_str = "_".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{operation_name}[{tag_str}]"

    def record_operation(
        self, operation_name: str, duration_ms: float, success: bool = True, **tags: Any
    ) -> None:
        """
        Record an operation execution.

        Args:
            operation_name: Name of the operation (e.g., "gateway.find")
            duration_ms: Duration in milliseconds
            success: Whether the operation succeeded
            **tags: Additional tags (error kind, collection, ...)
        """
        key = self._key(operation_name, tags)

        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                if len(self._metrics) >= self._max_metrics:
                    self._metrics.popitem(last=False)
                metric = self._metrics[key] = OperationMetrics(operation_name=operation_name)
            else:
                self._metrics.move_to_end(key)
            metric.record(duration_ms, success)

    def get_metrics(self, operation_name: str | None = None) -> dict[str, Any]:
        """
        Get metrics for operations, optionally filtered by name prefix.

        Returns:
            Dictionary of metrics keyed by metric key
        """
        with self._lock:
            metrics = {
                k: v.to_dict()
                for k, v in self._metrics.items()
                if operation_name is None or k.startswith(operation_name)
            }
            total_operations = len(self._metrics)

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": metrics,
            "total_operations": total_operations,
        }

    def get_summary(self) -> dict[str, Any]:
        """
        Get metrics aggregated by base operation name (tags folded together).
        """
        with self._lock:
            aggregated: dict[str, OperationMetrics] = {}
            for metric in self._metrics.values():
                agg = aggregated.setdefault(
                    metric.operation_name, OperationMetrics(operation_name=metric.operation_name)
                )
                agg.merge(metric)
            total_operations = len(self._metrics)

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_operations": total_operations,
            "summary": {name: m.to_dict() for name, m in aggregated.items()},
        }

    def get_operation_count(self, operation_name: str) -> int:
        """Get the count of executions for an operation across all tags."""
        with self._lock:
            return sum(
                m.count for m in self._metrics.values() if m.operation_name == operation_name
            )

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._metrics.clear()


_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get or create the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def record_operation(
    operation_name: str, duration_ms: float, success: bool = True, **tags: Any
) -> None:
    """Record an operation in the process-wide metrics collector."""
    get_metrics_collector().record_operation(operation_name, duration_ms, success, **tags)
