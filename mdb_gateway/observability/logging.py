"""
Contextual logging utilities for MDB_GATEWAY.

Every inbound request runs with a correlation ID and a request context
(identity, route, client address) stored in context variables, so log
records emitted anywhere in the pipeline carry them automatically.
"""

import contextvars
import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

_request_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "request_context", default=None
)


def get_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """
    Set a correlation ID in the current context.

    Args:
        correlation_id: Optional correlation ID (generates new one if None)

    Returns:
        The correlation ID that was set
    """
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


def set_request_context(route: str | None = None, **kwargs: Any) -> None:
    """
    Set request context for logging.

    Args:
        route: Route or operation name being serviced
        **kwargs: Additional context (key_name, client_address, handle, ...)
    """
    context = {"route": route, **kwargs}
    _request_context.set(context)


def update_request_context(**kwargs: Any) -> None:
    """Merge additional fields into the current request context."""
    context = dict(_request_context.get() or {})
    context.update(kwargs)
    _request_context.set(context)


def clear_request_context() -> None:
    """Clear request context."""
    _request_context.set(None)


def get_logging_context() -> dict[str, Any]:
    """
    Get current logging context (correlation ID and request context).

    Returns:
        Dictionary with context information
    """
    context: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    correlation_id = get_correlation_id()
    if correlation_id:
        context["correlation_id"] = correlation_id

    request_context = _request_context.get()
    if request_context:
        context.update({k: v for k, v in request_context.items() if v is not None})

    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that automatically adds context to log records.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = get_logging_context()

        extra = kwargs.get("extra", {})
        if extra:
            context.update(extra)

        kwargs["extra"] = context
        return msg, kwargs


def get_logger(name: str) -> ContextualLoggerAdapter:
    """
    Get a contextual logger that automatically adds correlation ID and context.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextualLoggerAdapter instance
    """
    return ContextualLoggerAdapter(logging.getLogger(name), {})


def fingerprint_secret(secret: str | None, length: int = 12) -> str:
    """
    Return a short SHA-256 fingerprint of a credential.

    Repeated attempts with the same secret share a fingerprint, so they can
    be correlated in logs without any part of the secret being written.
    """
    if not secret:
        return ""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:length]


def log_operation(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    level: int = logging.INFO,
    success: bool = True,
    duration_ms: float | None = None,
    **context: Any,
) -> None:
    """
    Log an operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name
        level: Log level
        success: Whether operation succeeded
        duration_ms: Operation duration in milliseconds
        **context: Additional context
    """
    log_context = get_logging_context()
    log_context.update({"operation": operation, "success": success})

    if duration_ms is not None:
        log_context["duration_ms"] = round(duration_ms, 2)

    if context:
        log_context.update(context)

    message = f"Operation: {operation}"
    if not success:
        message = f"Operation failed: {operation}"
    if duration_ms is not None:
        message += f" (duration: {duration_ms:.2f}ms)"

    logger.log(level, message, extra=log_context)


def configure_logging(level: str = "INFO") -> None:
    """Configure the ``mdb_gateway`` logger hierarchy once per process."""
    root = logging.getLogger("mdb_gateway")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        root.addHandler(handler)
    root.setLevel(level.upper())
