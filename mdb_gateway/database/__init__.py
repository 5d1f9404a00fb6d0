"""
Database layer.

Connection pooling, operator validation, resource limits, retry policy and
the collection operations the gateway proxies.
"""

from .operations import CollectionOperations, build_bulk_requests
from .pool import (
    ConnectionPool,
    ConnectionState,
    PooledConnection,
    build_client_options,
    default_client_factory,
    mask_uri,
)
from .query_validator import DEFAULT_ALLOWED_OPERATORS, OperatorValidator
from .resource_limiter import ResourceLimiter
from .retry import TRANSIENT_ERRORS, RetryPolicy

__all__ = [
    "ConnectionPool",
    "ConnectionState",
    "PooledConnection",
    "build_client_options",
    "default_client_factory",
    "mask_uri",
    "OperatorValidator",
    "DEFAULT_ALLOWED_OPERATORS",
    "ResourceLimiter",
    "RetryPolicy",
    "TRANSIENT_ERRORS",
    "CollectionOperations",
    "build_bulk_requests",
]
