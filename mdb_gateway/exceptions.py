"""
Custom exceptions for MDB_GATEWAY.

Every request-level failure maps to one error kind that is surfaced in the
response envelope. The base class keeps compatibility with RuntimeError.
"""

from typing import Any, Dict, Optional


class ErrorKind:
    """Error kinds surfaced in the envelope's ``error.kind`` field."""

    MISSING_CREDENTIAL = "MissingCredential"
    INVALID_CREDENTIAL = "InvalidCredential"
    INSUFFICIENT_PERMISSION = "InsufficientPermission"
    INVALID_CLIENT = "InvalidClient"
    RATE_LIMITED = "RateLimited"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    INVALID_INPUT = "InvalidInput"
    CONNECTION_NOT_FOUND = "ConnectionNotFound"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    OPERATION_FAILED = "OperationFailed"
    INTERNAL_ERROR = "InternalError"
    # Route-level only (unknown path or method)
    NOT_FOUND = "NotFound"


class GatewayError(RuntimeError):
    """
    Base exception for MongoDB Gateway errors.

    Attributes:
        message: Error message
        context: Optional dictionary with additional context (route,
                 key_name, handle, etc.)
        kind: Error kind reported to the client
        status_code: HTTP status used when rendering the error
    """

    kind: str = ErrorKind.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            context: Optional dictionary with additional context information
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (context: {context_str})"
        return self.message


class ConfigurationError(GatewayError):
    """
    Raised when configuration is invalid or missing.

    Attributes:
        message: Error message
        config_key: Configuration key that caused the error (if available)
        config_value: Configuration value that caused the error (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value
        super().__init__(message, context=context)
        self.config_key = config_key
        self.config_value = config_value


# ============================================================================
# AUTHENTICATION / AUTHORIZATION
# ============================================================================


class MissingCredentialError(GatewayError):
    """Raised when a request carries no API key."""

    kind = ErrorKind.MISSING_CREDENTIAL
    status_code = 401


class InvalidCredentialError(GatewayError):
    """Raised when an API key matches no unexpired credential entry."""

    kind = ErrorKind.INVALID_CREDENTIAL
    status_code = 401


class InsufficientPermissionError(GatewayError):
    """
    Raised when an authenticated identity lacks the required scopes.

    Attributes:
        required: Scopes of which at least one was required
        granted: Scopes the identity holds
    """

    kind = ErrorKind.INSUFFICIENT_PERMISSION
    status_code = 403

    def __init__(
        self,
        message: str,
        required: Optional[list] = None,
        granted: Optional[list] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if required is not None:
            context["required"] = required
        if granted is not None:
            context["granted"] = granted
        super().__init__(message, context=context)
        self.required = required or []
        self.granted = granted or []


class InvalidClientError(GatewayError):
    """Raised when the caller does not present the expected client identity."""

    kind = ErrorKind.INVALID_CLIENT
    status_code = 403


# ============================================================================
# REQUEST LIMITS / VALIDATION
# ============================================================================


class RateLimitedError(GatewayError):
    """
    Raised when an identity exceeds its request ceiling for the window.

    Attributes:
        retry_after: Seconds until the window resets
    """

    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(
        self,
        message: str,
        retry_after: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        context["retry_after"] = retry_after
        super().__init__(message, context=context)
        self.retry_after = retry_after


class ResourceLimitExceeded(GatewayError):
    """
    Raised when a request exceeds a resource limit.

    Attributes:
        limit_type: Type of limit exceeded (payload_size, document_size, ...)
        limit_value: The limit value
        actual_value: The actual value that exceeded the limit
    """

    kind = ErrorKind.INVALID_INPUT
    status_code = 400

    def __init__(
        self,
        message: str,
        limit_type: Optional[str] = None,
        limit_value: Optional[Any] = None,
        actual_value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if limit_type:
            context["limit_type"] = limit_type
        if limit_value is not None:
            context["limit_value"] = limit_value
        if actual_value is not None:
            context["actual_value"] = actual_value
        super().__init__(message, context=context)
        self.limit_type = limit_type
        self.limit_value = limit_value
        self.actual_value = actual_value


class PayloadTooLargeError(ResourceLimitExceeded):
    """Raised when a request body exceeds the configured size ceiling."""

    kind = ErrorKind.PAYLOAD_TOO_LARGE
    status_code = 413


class InvalidInputError(GatewayError):
    """Raised when a request body is structurally invalid."""

    kind = ErrorKind.INVALID_INPUT
    status_code = 400


class QueryValidationError(InvalidInputError):
    """
    Raised when a query, update or pipeline fails validation.

    Attributes:
        query_type: Part of the request that failed (filter, update, pipeline, ...)
        operator: Offending operator (if any)
        path: JSON path of the offending key
    """

    def __init__(
        self,
        message: str,
        query_type: Optional[str] = None,
        operator: Optional[str] = None,
        path: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if query_type:
            context["query_type"] = query_type
        if operator:
            context["operator"] = operator
        if path:
            context["path"] = path
        super().__init__(message, context=context)
        self.query_type = query_type
        self.operator = operator
        self.path = path


class CodecError(InvalidInputError, ValueError):
    """
    Raised when a value cannot be converted between wire and document form.

    Attributes:
        field: Field being converted (if known)
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if field is not None:
            context["field"] = field
        super().__init__(message, context=context)
        self.field = field


# ============================================================================
# CONNECTION POOL / UPSTREAM
# ============================================================================


class ConnectionNotFoundError(GatewayError):
    """Raised when a handle is unknown or already closed."""

    kind = ErrorKind.CONNECTION_NOT_FOUND
    status_code = 404

    def __init__(self, handle: str, context: Optional[Dict[str, Any]] = None) -> None:
        context = context or {}
        context["handle"] = handle
        super().__init__("Connection not found", context=context)
        self.handle = handle


class CapacityExceededError(GatewayError):
    """
    Raised when the pool is full after an eviction sweep.

    Attributes:
        max_connections: Configured pool capacity
    """

    kind = ErrorKind.CAPACITY_EXCEEDED
    status_code = 503

    def __init__(self, max_connections: int, context: Optional[Dict[str, Any]] = None) -> None:
        context = context or {}
        context["max_connections"] = max_connections
        super().__init__(
            f"Maximum connections limit reached ({max_connections})", context=context
        )
        self.max_connections = max_connections


class UpstreamUnavailableError(GatewayError):
    """Raised when the document store cannot be reached (after retries)."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    status_code = 503


class OperationFailedError(GatewayError):
    """Raised when the document store rejects an operation (non-transient)."""

    kind = ErrorKind.OPERATION_FAILED
    status_code = 500
