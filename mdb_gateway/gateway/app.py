"""
FastAPI application factory for MDB_GATEWAY.

Usage:
    app = create_app()                      # settings from MDB_GATEWAY_* env
    uvicorn.run(app, host="0.0.0.0", port=3000)
"""

import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..config import GatewaySettings
from ..constants import HEADER_REQUEST_ID
from ..database.pool import ClientFactory
from ..exceptions import ErrorKind, GatewayError
from ..observability import (
    clear_correlation_id,
    clear_request_context,
    configure_logging,
    get_logger,
    set_correlation_id,
    set_request_context,
)
from .envelope import ResponseEnvelope
from .pipeline import RequestGateway
from .routes import router

logger = logging.getLogger(__name__)
contextual_logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID and the client address to every request.

    The caller's ``X-Request-ID`` is reused when present and echoed back.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get(HEADER_REQUEST_ID))
        set_request_context(client_address=request.client.host if request.client else None)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
            clear_correlation_id()
        response.headers[HEADER_REQUEST_ID] = correlation_id
        return response


def _error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        content=ResponseEnvelope.fail(kind, message).render(), status_code=status_code
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render errors raised outside the gateway pipeline as envelopes."""

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        contextual_logger.warning(
            f"Request rejected: {exc.kind}",
            extra={"error_kind": exc.kind, "reason": exc.message},
        )
        return _error_response(exc.status_code, exc.kind, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(400, ErrorKind.INVALID_INPUT, "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _error_response(404, ErrorKind.NOT_FOUND, "Endpoint not found")
        kind = ErrorKind.INVALID_INPUT if exc.status_code < 500 else ErrorKind.INTERNAL_ERROR
        return _error_response(exc.status_code, kind, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return _error_response(500, ErrorKind.INTERNAL_ERROR, "Internal server error")


def create_app(
    settings: GatewaySettings | None = None,
    gateway: RequestGateway | None = None,
    client_factory: ClientFactory | None = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Gateway settings (read from the environment when omitted)
        gateway: Pre-built gateway (tests inject fakes here)
        client_factory: Factory for upstream clients, passed to the pool

    Raises:
        ConfigurationError: If the settings are inconsistent
    """
    settings = settings or GatewaySettings()
    if gateway is None:
        gateway = RequestGateway.from_settings(settings, client_factory=client_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        gateway.pool.start()
        logger.info(
            f"MDB Gateway started (max_connections={gateway.pool.max_connections}, "
            f"api_keys={len(gateway.credentials)})"
        )
        try:
            yield
        finally:
            await gateway.pool.shutdown()
            logger.info("MDB Gateway stopped")

    app = FastAPI(
        title="MDB Gateway",
        description="Authenticated HTTP gateway to MongoDB",
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)
    app.include_router(router)
    return app
