"""
HTTP routes for MDB_GATEWAY.

Every authenticated route is a thin adapter: it turns the Starlette request
into a ``GatewayRequest``, runs it through the ``RequestGateway`` held in
``app.state.gateway`` and renders the resulting envelope.
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..database import ResourceLimiter
from .envelope import ResponseEnvelope
from .pipeline import GatewayRequest, GatewayResponse, RequestGateway

logger = logging.getLogger(__name__)

CONNECTIONS = "/api/v1/connections"
CONNECTION = CONNECTIONS + "/{connection_id}"
COLLECTION = CONNECTION + "/databases/{database}/collections/{collection}"

# (method, path, gateway operation)
ROUTES: tuple[tuple[str, str, str], ...] = (
    ("POST", CONNECTIONS, "connection.open"),
    ("GET", CONNECTIONS, "connection.list"),
    ("GET", CONNECTION, "connection.status"),
    ("DELETE", CONNECTION, "connection.close"),
    ("POST", CONNECTION + "/ping", "connection.ping"),
    ("POST", COLLECTION + "/documents", "insertOne"),
    ("POST", COLLECTION + "/documents/insertMany", "insertMany"),
    ("POST", COLLECTION + "/documents/findOne", "findOne"),
    ("POST", COLLECTION + "/documents/find", "find"),
    ("POST", COLLECTION + "/documents/updateOne", "updateOne"),
    ("POST", COLLECTION + "/documents/updateMany", "updateMany"),
    ("POST", COLLECTION + "/documents/deleteOne", "deleteOne"),
    ("POST", COLLECTION + "/documents/deleteMany", "deleteMany"),
    ("POST", COLLECTION + "/documents/count", "count"),
    ("POST", COLLECTION + "/documents/distinct", "distinct"),
    ("POST", COLLECTION + "/documents/bulkWrite", "bulkWrite"),
    ("POST", COLLECTION + "/aggregate", "aggregate"),
    ("POST", COLLECTION + "/indexes", "createIndex"),
    ("GET", COLLECTION + "/indexes", "listIndexes"),
    ("DELETE", COLLECTION + "/indexes/{index_name}", "dropIndex"),
    ("POST", "/api/v1/batch", "batch"),
    ("GET", "/health/detailed", "health.detailed"),
)


def render(response: GatewayResponse) -> JSONResponse:
    return JSONResponse(
        content=jsonable_encoder(response.envelope.render()),
        status_code=response.status_code,
        headers=response.headers or None,
    )


async def read_body(request: Request, limiter: ResourceLimiter) -> bytes:
    """
    Read the request body, refusing to buffer more than the payload ceiling.

    Raises:
        PayloadTooLargeError: If the declared or received size is too large
    """
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit():
        limiter.check_payload_size(int(declared))

    received = bytearray()
    async for chunk in request.stream():
        received.extend(chunk)
        limiter.check_payload_size(len(received))
    return bytes(received)


async def build_gateway_request(request: Request, operation: str) -> GatewayRequest:
    """
    Raises:
        PayloadTooLargeError: If the body exceeds the gateway's payload ceiling
    """
    gateway: RequestGateway = request.app.state.gateway
    raw = await read_body(request, gateway.limiter)

    params = request.path_params
    return GatewayRequest(
        operation=operation,
        headers=request.headers,
        raw_body=raw,
        body_size=len(raw),
        client_address=request.client.host if request.client else None,
        handle=params.get("connection_id"),
        database=params.get("database"),
        collection=params.get("collection"),
        index_name=params.get("index_name"),
    )


async def dispatch(request: Request, operation: str) -> JSONResponse:
    gateway: RequestGateway = request.app.state.gateway
    gateway_request = await build_gateway_request(request, operation)
    return render(await gateway.handle(gateway_request))


def _endpoint(operation: str):
    async def endpoint(request: Request) -> JSONResponse:
        return await dispatch(request, operation)

    endpoint.__name__ = operation.replace(".", "_")
    return endpoint


router = APIRouter()

for _method, _path, _operation in ROUTES:
    router.add_api_route(_path, _endpoint(_operation), methods=[_method], name=_operation)


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Public liveness probe."""
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    envelope = ResponseEnvelope.ok(
        {"status": "healthy", "uptime": round(time.monotonic() - started_at, 3)}
    )
    return JSONResponse(content=envelope.render())
