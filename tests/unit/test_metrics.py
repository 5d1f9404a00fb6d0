"""
Unit tests for MetricsCollector.

Tests metrics collection functionality including:
- Thread-safety under concurrent access
- Bounded storage with LRU eviction
- Tag folding in summaries
"""

import threading

from mdb_gateway.observability.metrics import (
    MetricsCollector,
    OperationMetrics,
    get_metrics_collector,
    record_operation,
)


class TestMetricsCollectorThreadSafety:
    """Test thread-safety of metrics collection."""

    def test_concurrent_record_operation(self):
        """Concurrent record_operation calls lose no updates."""
        collector = MetricsCollector()
        num_threads = 10
        operations_per_thread = 100
        barrier = threading.Barrier(num_threads)

        def record_operations(thread_id: int):
            barrier.wait()
            for i in range(operations_per_thread):
                collector.record_operation(
                    f"gateway.op_{thread_id}", duration_ms=10.0 + i, success=True
                )

        threads = [
            threading.Thread(target=record_operations, args=(i,)) for i in range(num_threads)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        metrics = collector.get_metrics()
        total_recorded = sum(m["count"] for m in metrics["metrics"].values())
        assert total_recorded == num_threads * operations_per_thread

    def test_concurrent_get_summary(self):
        collector = MetricsCollector()
        for i in range(20):
            collector.record_operation(f"gateway.op_{i}", duration_ms=10.0)

        results = []
        errors = []

        def get_summary():
            try:
                results.append(collector.get_summary())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=get_summary) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(results) == 5
        assert all(len(r["summary"]) == 20 for r in results)


class TestMetricsCollectorBoundedStorage:
    """Test bounded storage and LRU eviction."""

    def test_max_metrics_limit(self):
        collector = MetricsCollector(max_metrics=5)
        for i in range(8):
            collector.record_operation(f"gateway.op_{i}", duration_ms=10.0)

        assert len(collector.get_metrics()["metrics"]) == 5

    def test_lru_eviction_order(self):
        """Recording an operation makes it most recently used."""
        collector = MetricsCollector(max_metrics=3)
        collector.record_operation("gateway.op_0", duration_ms=10.0)
        collector.record_operation("gateway.op_1", duration_ms=10.0)
        collector.record_operation("gateway.op_2", duration_ms=10.0)
        collector.record_operation("gateway.op_0", duration_ms=10.0)

        collector.record_operation("gateway.op_3", duration_ms=10.0)

        keys = set(collector.get_metrics()["metrics"])
        assert keys == {"gateway.op_0", "gateway.op_2", "gateway.op_3"}


class TestMetricsAggregation:
    """Per-key metrics and summaries."""

    def test_tags_become_separate_keys(self):
        collector = MetricsCollector()
        collector.record_operation("gateway.find", 5.0)
        collector.record_operation("gateway.find", 7.0, success=False, error="InvalidInput")

        keys = set(collector.get_metrics("gateway.find")["metrics"])
        assert keys == {"gateway.find", "gateway.find[error=InvalidInput]"}

    def test_summary_folds_tags(self):
        collector = MetricsCollector()
        collector.record_operation("gateway.find", 5.0)
        collector.record_operation("gateway.find", 15.0, success=False, error="InvalidInput")

        summary = collector.get_summary()["summary"]["gateway.find"]

        assert summary["count"] == 2
        assert summary["error_count"] == 1
        assert summary["error_rate_percent"] == 50.0
        assert summary["min_duration_ms"] == 5.0
        assert summary["max_duration_ms"] == 15.0
        assert collector.get_operation_count("gateway.find") == 2

    def test_operation_metrics_defaults(self):
        metric = OperationMetrics(operation_name="pool.open")
        as_dict = metric.to_dict()
        assert as_dict["min_duration_ms"] == 0.0
        assert as_dict["avg_duration_ms"] == 0.0
        assert as_dict["last_execution"] is None

    def test_process_wide_collector(self):
        record_operation("pool.close", 1.0)
        assert get_metrics_collector().get_operation_count("pool.close") == 1

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("gateway.count", 1.0)
        collector.reset()
        assert collector.get_metrics()["total_operations"] == 0
