"""
Resource limiting for MDB_GATEWAY.

Bounds what a single request may cost: body size, result size, server-side
query time, document size and the number of operations in one bulk request.
"""

import logging
from typing import Any

from bson import encode as bson_encode
from bson.errors import InvalidDocument

from ..constants import (
    DEFAULT_MAX_PAYLOAD_BYTES,
    DEFAULT_MAX_TIME_MS,
    MAX_BULK_OPERATIONS,
    MAX_DOCUMENT_SIZE,
    MAX_QUERY_RESULT_SIZE,
    MAX_QUERY_TIME_MS,
)
from ..exceptions import InvalidInputError, PayloadTooLargeError, ResourceLimitExceeded

logger = logging.getLogger(__name__)


class ResourceLimiter:
    """
    Enforces per-request resource limits.
    """

    def __init__(
        self,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        default_timeout_ms: int = DEFAULT_MAX_TIME_MS,
        max_timeout_ms: int = MAX_QUERY_TIME_MS,
        max_result_size: int = MAX_QUERY_RESULT_SIZE,
        max_document_size: int = MAX_DOCUMENT_SIZE,
        max_bulk_operations: int = MAX_BULK_OPERATIONS,
    ):
        """
        Initialize the resource limiter.

        Args:
            max_payload_bytes: Maximum request body size in bytes
            default_timeout_ms: maxTimeMS applied when the caller sets none
            max_timeout_ms: Ceiling for a caller-supplied maxTimeMS
            max_result_size: Maximum number of documents in a result set
            max_document_size: Maximum BSON document size in bytes
            max_bulk_operations: Maximum operations in one bulk or batch request
        """
        self.max_payload_bytes = max_payload_bytes
        self.default_timeout_ms = default_timeout_ms
        self.max_timeout_ms = max_timeout_ms
        self.max_result_size = max_result_size
        self.max_document_size = max_document_size
        self.max_bulk_operations = max_bulk_operations

    def check_payload_size(self, size: int | None) -> None:
        """
        Reject request bodies larger than the configured ceiling.

        Args:
            size: Body size in bytes (None when unknown)

        Raises:
            PayloadTooLargeError: If the body is too large
        """
        if size is None:
            return
        if size > self.max_payload_bytes:
            raise PayloadTooLargeError(
                "Request entity too large",
                limit_type="payload_size",
                limit_value=self.max_payload_bytes,
                actual_value=size,
            )

    def enforce_query_timeout(self, max_time_ms: Any = None) -> int:
        """
        Resolve the maxTimeMS to send with a query.

        Returns:
            The caller's value capped to the maximum, or the default
        """
        if max_time_ms is None:
            return self.default_timeout_ms
        if isinstance(max_time_ms, bool) or not isinstance(max_time_ms, int) or max_time_ms <= 0:
            raise InvalidInputError("maxTimeMS must be a positive integer")
        if max_time_ms > self.max_timeout_ms:
            logger.warning(
                f"Query timeout {max_time_ms}ms exceeds maximum {self.max_timeout_ms}ms. "
                f"Capping to {self.max_timeout_ms}ms"
            )
            return self.max_timeout_ms
        return max_time_ms

    def enforce_result_limit(self, limit: Any = None) -> int:
        """
        Enforce maximum result limit.

        Args:
            limit: Requested limit (None or 0 means "as many as allowed")

        Returns:
            Enforced limit value (capped to maximum if needed)
        """
        if limit is None or limit == 0:
            return self.max_result_size
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise InvalidInputError("limit must be a non-negative integer")
        if limit > self.max_result_size:
            logger.warning(
                f"Result limit {limit} exceeds maximum {self.max_result_size}. "
                f"Capping to {self.max_result_size}"
            )
            return self.max_result_size
        return limit

    def check_operation_count(self, count: int, what: str = "operations") -> None:
        """
        Reject bulk and batch requests with too many operations.

        Raises:
            InvalidInputError: If ``count`` is zero
            ResourceLimitExceeded: If ``count`` exceeds the maximum
        """
        if count == 0:
            raise InvalidInputError(f"At least one item is required in {what}")
        if count > self.max_bulk_operations:
            raise ResourceLimitExceeded(
                f"Too many {what}: {count} > {self.max_bulk_operations}",
                limit_type="bulk_operations",
                limit_value=self.max_bulk_operations,
                actual_value=count,
            )

    def validate_document_size(self, document: dict[str, Any]) -> None:
        """
        Validate that a document doesn't exceed size limits.

        Uses actual BSON encoding for accurate size calculation.

        Raises:
            ResourceLimitExceeded: If document exceeds size limit
        """
        try:
            actual_size = len(bson_encode(document))
        except InvalidDocument as e:
            # The server reports the real error on insert
            logger.warning(f"Could not encode document as BSON for size validation: {e}")
            return

        if actual_size > self.max_document_size:
            raise ResourceLimitExceeded(
                f"Document size {actual_size} bytes exceeds maximum "
                f"{self.max_document_size} bytes",
                limit_type="document_size",
                limit_value=self.max_document_size,
                actual_value=actual_size,
            )

    def validate_documents_size(self, documents: list[dict[str, Any]]) -> None:
        """
        Validate that multiple documents don't exceed size limits.

        Raises:
            ResourceLimitExceeded: If any document exceeds size limit
        """
        for idx, doc in enumerate(documents):
            try:
                self.validate_document_size(doc)
            except ResourceLimitExceeded as e:
                raise ResourceLimitExceeded(
                    f"{e.message} (document index: {idx})",
                    limit_type=e.limit_type,
                    limit_value=e.limit_value,
                    actual_value=e.actual_value,
                    context={**e.context, "document_index": idx},
                ) from e
