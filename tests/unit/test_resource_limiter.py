"""
Unit tests for ResourceLimiter.

Tests resource limit enforcement including payload size, query timeouts,
result size limits, document size validation and bulk size limits.
"""

import pytest

from mdb_gateway.database.resource_limiter import ResourceLimiter
from mdb_gateway.exceptions import (
    InvalidInputError,
    PayloadTooLargeError,
    ResourceLimitExceeded,
)


@pytest.mark.unit
class TestResourceLimiter:
    """Test ResourceLimiter functionality."""

    def test_payload_within_limit(self):
        limiter = ResourceLimiter(max_payload_bytes=100)
        limiter.check_payload_size(100)
        limiter.check_payload_size(None)

    def test_payload_too_large(self):
        limiter = ResourceLimiter(max_payload_bytes=100)
        with pytest.raises(PayloadTooLargeError) as exc_info:
            limiter.check_payload_size(101)
        assert exc_info.value.status_code == 413
        assert exc_info.value.actual_value == 101

    def test_enforce_query_timeout_default(self):
        """Test that default timeout is used when none is requested."""
        limiter = ResourceLimiter(default_timeout_ms=30000)
        assert limiter.enforce_query_timeout() == 30000

    def test_enforce_query_timeout_existing_timeout(self):
        """Test that a requested timeout under the maximum is preserved."""
        limiter = ResourceLimiter(default_timeout_ms=30000)
        assert limiter.enforce_query_timeout(10000) == 10000

    def test_enforce_query_timeout_exceeds_maximum(self):
        """Test that timeouts exceeding maximum are capped."""
        limiter = ResourceLimiter(default_timeout_ms=30000, max_timeout_ms=60000)
        assert limiter.enforce_query_timeout(120000) == 60000

    @pytest.mark.parametrize("value", [0, -5, "1000", True])
    def test_enforce_query_timeout_invalid(self, value):
        limiter = ResourceLimiter()
        with pytest.raises(InvalidInputError):
            limiter.enforce_query_timeout(value)

    def test_enforce_result_limit_none(self):
        """Test that None limit returns max allowed."""
        limiter = ResourceLimiter(max_result_size=10000)
        assert limiter.enforce_result_limit(None) == 10000
        assert limiter.enforce_result_limit(0) == 10000

    def test_enforce_result_limit_within_limit(self):
        limiter = ResourceLimiter(max_result_size=10000)
        assert limiter.enforce_result_limit(50) == 50

    def test_enforce_result_limit_capped(self):
        limiter = ResourceLimiter(max_result_size=100)
        assert limiter.enforce_result_limit(5000) == 100

    def test_enforce_result_limit_negative(self):
        limiter = ResourceLimiter()
        with pytest.raises(InvalidInputError):
            limiter.enforce_result_limit(-1)

    def test_operation_count(self):
        limiter = ResourceLimiter(max_bulk_operations=3)
        limiter.check_operation_count(3)
        with pytest.raises(InvalidInputError):
            limiter.check_operation_count(0)
        with pytest.raises(ResourceLimitExceeded) as exc_info:
            limiter.check_operation_count(4, "batch operations")
        assert exc_info.value.limit_type == "bulk_operations"

    def test_document_size(self):
        limiter = ResourceLimiter(max_document_size=64)
        limiter.validate_document_size({"name": "Ana"})
        with pytest.raises(ResourceLimitExceeded, match="exceeds maximum"):
            limiter.validate_document_size({"blob": "x" * 100})

    def test_documents_size_reports_index(self):
        limiter = ResourceLimiter(max_document_size=64)
        with pytest.raises(ResourceLimitExceeded) as exc_info:
            limiter.validate_documents_size([{"a": 1}, {"blob": "x" * 100}])
        assert exc_info.value.context["document_index"] == 1
