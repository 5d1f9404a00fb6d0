"""
Request Gateway and its HTTP surface.
"""

from .app import RequestContextMiddleware, create_app, register_exception_handlers
from .envelope import ErrorBody, ResponseEnvelope, utc_timestamp
from .pipeline import (
    OPERATIONS,
    GatewayRequest,
    GatewayResponse,
    OperationSpec,
    RequestGateway,
    encode_result,
)
from .routes import ROUTES, router

__all__ = [
    "RequestGateway",
    "GatewayRequest",
    "GatewayResponse",
    "OperationSpec",
    "OPERATIONS",
    "encode_result",
    "ResponseEnvelope",
    "ErrorBody",
    "utc_timestamp",
    "create_app",
    "register_exception_handlers",
    "RequestContextMiddleware",
    "router",
    "ROUTES",
]
