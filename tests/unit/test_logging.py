"""
Unit tests for contextual logging helpers.
"""

import hashlib
import logging

import pytest

from mdb_gateway.observability import (
    clear_correlation_id,
    fingerprint_secret,
    get_correlation_id,
    get_logger,
    get_logging_context,
    log_operation,
    set_correlation_id,
    set_request_context,
    update_request_context,
)


@pytest.mark.unit
class TestRequestContext:
    """Correlation ID and request context."""

    def test_correlation_id_generated(self):
        correlation_id = set_correlation_id()
        assert correlation_id
        assert get_correlation_id() == correlation_id

    def test_correlation_id_reused(self):
        assert set_correlation_id("req-1") == "req-1"
        clear_correlation_id()
        assert get_correlation_id() is None

    def test_context_merges_and_drops_none(self):
        set_correlation_id("req-2")
        set_request_context(route="find", client_address=None)
        update_request_context(key_name="plugin")

        context = get_logging_context()

        assert context["correlation_id"] == "req-2"
        assert context["route"] == "find"
        assert context["key_name"] == "plugin"
        assert "client_address" not in context


@pytest.mark.unit
class TestLoggers:
    """Adapters and structured operation logs."""

    def test_adapter_adds_context(self, caplog):
        set_request_context(route="count")
        logger = get_logger("mdb_gateway.test")

        with caplog.at_level(logging.INFO, logger="mdb_gateway.test"):
            logger.info("hello", extra={"handle": "h1"})

        record = caplog.records[-1]
        assert record.route == "count"
        assert record.handle == "h1"

    def test_log_operation_failure(self, caplog):
        logger = logging.getLogger("mdb_gateway.test")

        with caplog.at_level(logging.WARNING, logger="mdb_gateway.test"):
            log_operation(logger, "insertOne", logging.WARNING, success=False, duration_ms=12.5)

        record = caplog.records[-1]
        assert record.getMessage() == "Operation failed: insertOne (duration: 12.50ms)"
        assert record.duration_ms == 12.5
        assert record.success is False


@pytest.mark.unit
class TestFingerprintSecret:
    """Credential fingerprints for logs."""

    def test_fingerprint_is_sha256_prefix(self):
        secret = "plugin-secret-0123456789"
        expected = hashlib.sha256(secret.encode("utf-8")).hexdigest()[:12]

        assert fingerprint_secret(secret) == expected

    def test_fingerprint_hides_secret(self):
        fingerprint = fingerprint_secret("plugin-secret-0123456789")
        assert "plugin" not in fingerprint
        assert len(fingerprint) == 12

    def test_same_secret_same_fingerprint(self):
        assert fingerprint_secret("abc") == fingerprint_secret("abc")
        assert fingerprint_secret("abc") != fingerprint_secret("abd")

    def test_empty(self):
        assert fingerprint_secret(None) == ""
