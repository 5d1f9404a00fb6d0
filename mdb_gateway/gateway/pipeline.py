"""
Request Gateway.

Services every inbound operation through one fixed pipeline:

    payload size -> authenticate -> client identity -> authorize
    -> rate gate -> parse + decode + validate body -> resolve handle
    -> operation (timeout + retry) -> encode result -> envelope

Any stage may reject; a rejection becomes a ``success=false`` envelope
carrying the stage's error kind and nothing downstream of it runs. The
gateway is transport independent: routes build a ``GatewayRequest`` and
render the returned ``GatewayResponse``.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..auth import (
    AuthContext,
    ClientIdentityVerifier,
    CredentialStore,
    RateGate,
    RateOutcome,
    extract_credential,
)
from ..codec import decode, encode
from ..config import GatewaySettings
from ..constants import PERMISSION_ADMIN, PERMISSION_READ, PERMISSION_WRITE
from ..database import (
    CollectionOperations,
    ConnectionPool,
    OperatorValidator,
    ResourceLimiter,
    RetryPolicy,
)
from ..database.pool import ClientFactory
from ..exceptions import (
    CodecError,
    GatewayError,
    InvalidCredentialError,
    InvalidInputError,
    MissingCredentialError,
    OperationFailedError,
    RateLimitedError,
)
from ..observability import (
    HealthChecker,
    check_pool_health,
    get_logger,
    get_metrics_collector,
    record_operation,
    update_request_context,
)
from .envelope import ResponseEnvelope

logger = logging.getLogger(__name__)
contextual_logger = get_logger(__name__)

_FORBIDDEN_NAME_CHARS = {
    "database": frozenset('$\0/\\ ."*<>:|?'),
    "collection": frozenset("$\0"),
}


@dataclass
class GatewayRequest:
    """
    One inbound operation, independent of the HTTP framework.

    ``headers`` must be case-insensitive or keyed by lower-case names.
    ``body`` is the parsed JSON body in wire form. Transports may instead
    pass the undecoded bytes in ``raw_body``; they are parsed only after the
    request has been admitted.
    """

    operation: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    raw_body: bytes | None = None
    body_size: int | None = None
    client_address: str | None = None
    handle: str | None = None
    database: str | None = None
    collection: str | None = None
    index_name: str | None = None


@dataclass
class GatewayResponse:
    status_code: int
    envelope: ResponseEnvelope
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationSpec:
    """
    Static description of a gateway operation.

    Attributes:
        name: Operation name (also the metrics name suffix)
        permissions: Scopes of which the caller needs at least one
        handler: Name of the RequestGateway method servicing it
        success_status: HTTP status on success
        encode_result: Whether the result goes through the wire codec
    """

    name: str
    permissions: tuple[str, ...]
    handler: str
    success_status: int = 200
    encode_result: bool = True


READ = (PERMISSION_READ,)
WRITE = (PERMISSION_WRITE,)
ADMIN = (PERMISSION_ADMIN,)

OPERATIONS: tuple[OperationSpec, ...] = (
    # Connections
    OperationSpec("connection.open", READ, "_op_connection_open", success_status=201),
    OperationSpec("connection.status", READ, "_op_connection_status"),
    OperationSpec("connection.close", READ, "_op_connection_close"),
    OperationSpec("connection.ping", READ, "_op_connection_ping"),
    OperationSpec("connection.list", ADMIN, "_op_connection_list", encode_result=False),
    # Documents
    OperationSpec("insertOne", WRITE, "_op_insert_one", success_status=201),
    OperationSpec("insertMany", WRITE, "_op_insert_many", success_status=201),
    OperationSpec("findOne", READ, "_op_find_one"),
    OperationSpec("find", READ, "_op_find"),
    OperationSpec("updateOne", WRITE, "_op_update_one"),
    OperationSpec("updateMany", WRITE, "_op_update_many"),
    OperationSpec("deleteOne", WRITE, "_op_delete_one"),
    OperationSpec("deleteMany", WRITE, "_op_delete_many"),
    OperationSpec("count", READ, "_op_count"),
    OperationSpec("distinct", READ, "_op_distinct"),
    OperationSpec("aggregate", READ, "_op_aggregate"),
    OperationSpec("bulkWrite", WRITE, "_op_bulk_write"),
    # Indexes
    OperationSpec("createIndex", WRITE, "_op_create_index", success_status=201),
    OperationSpec("listIndexes", READ, "_op_list_indexes"),
    OperationSpec("dropIndex", WRITE, "_op_drop_index"),
    # Batch and admin
    OperationSpec("batch", WRITE, "_op_batch", encode_result=False),
    OperationSpec("health.detailed", ADMIN, "_op_health_detailed", encode_result=False),
)

BATCH_OPERATIONS = frozenset(
    {"insertOne", "insertMany", "findOne", "find", "updateOne", "updateMany", "deleteOne",
     "deleteMany"}
)  # fmt: skip


def _mapping(payload: Mapping[str, Any], key: str, required: bool = False) -> dict[str, Any]:
    value = payload.get(key)
    if value is None:
        if required:
            raise InvalidInputError(f"{key} is required")
        return {}
    if not isinstance(value, Mapping):
        raise InvalidInputError(f"{key} must be an object")
    return dict(value)


def _flag(options: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = options.get(key, default)
    if not isinstance(value, bool):
        raise InvalidInputError(f"{key} must be a boolean")
    return value


def _check_name(value: Any, kind: str) -> str:
    if not isinstance(value, str) or not value or len(value) > 120:
        raise InvalidInputError(f"Invalid {kind} name")
    if _FORBIDDEN_NAME_CHARS[kind] & set(value):
        raise InvalidInputError(f"Invalid {kind} name")
    return value


def encode_result(result: Any) -> Any:
    """
    Encode an operation result (Document, list of Documents or None).

    Raises:
        OperationFailedError: If a stored value cannot be carried on the wire
    """
    try:
        if result is None:
            return None
        if isinstance(result, list):
            return [encode(item) for item in result]
        return encode(result)
    except CodecError as e:
        raise OperationFailedError(
            f"Result contains a value the wire format cannot carry: {e.message}",
            context=e.context,
        ) from e


class RequestGateway:
    """
    Composes the gates, the pool and the codec into the request pipeline.

    All collaborators are injected; ``from_settings`` builds the defaults.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        credentials: CredentialStore,
        rate_gate: RateGate | None = None,
        validator: OperatorValidator | None = None,
        limiter: ResourceLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        identity_verifier: ClientIdentityVerifier | None = None,
        health_checker: HealthChecker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.credentials = credentials
        # An empty RateGate is falsy (it defines __len__)
        self.rate_gate = rate_gate if rate_gate is not None else RateGate()
        self.validator = validator if validator is not None else OperatorValidator()
        self.limiter = limiter if limiter is not None else ResourceLimiter()
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.identity_verifier = (
            identity_verifier if identity_verifier is not None else ClientIdentityVerifier()
        )
        self._sleep = sleep
        self._operations = {spec.name: spec for spec in OPERATIONS}

        if health_checker is None:
            health_checker = HealthChecker()

            async def connection_pool() -> Any:
                return await check_pool_health(self.pool.stats)

            health_checker.register_check(connection_pool)
        self.health_checker = health_checker

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        pool: ConnectionPool | None = None,
        credentials: CredentialStore | None = None,
        client_factory: ClientFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "RequestGateway":
        """
        Build a gateway from settings.

        Raises:
            ConfigurationError: If the settings are inconsistent
        """
        settings.validate_settings()

        if pool is None:
            pool = ConnectionPool(
                max_connections=settings.max_connections,
                ttl_seconds=settings.connection_ttl_seconds,
                sweep_interval_seconds=settings.sweep_interval_seconds,
                handshake_timeout_seconds=settings.handshake_timeout_seconds,
                client_factory=client_factory,
            )
        if credentials is None:
            credentials = CredentialStore(bcrypt_rounds=settings.bcrypt_rounds)
        if settings.api_key:
            credentials.add_key(
                settings.api_key_name,
                settings.api_key,
                settings.api_key_permissions,
                description="Configured API key",
            )
        elif not len(credentials):
            logger.warning("No API keys configured; every authenticated route will be rejected")

        return cls(
            pool=pool,
            credentials=credentials,
            rate_gate=RateGate(
                window_seconds=settings.rate_window_seconds,
                max_requests=settings.rate_max_requests,
                slow_down_after=settings.slow_down_after,
                delay_ms=settings.slow_down_delay_ms,
            ),
            validator=OperatorValidator(
                max_depth=settings.max_query_depth,
                max_keys=settings.max_object_keys,
                extra_allowed_operators=settings.extra_allowed_operators,
            ),
            limiter=ResourceLimiter(max_payload_bytes=settings.max_payload_bytes),
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay_seconds=settings.retry_base_delay_seconds,
                max_delay_seconds=settings.retry_max_delay_seconds,
                timeout_seconds=settings.operation_timeout_seconds,
            ),
            identity_verifier=ClientIdentityVerifier(
                user_agent_marker=settings.client_user_agent_marker,
                extension_marker=settings.client_extension_marker,
                required=settings.require_client_identity,
            ),
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def operation(self, name: str) -> OperationSpec:
        return self._operations[name]

    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        """
        Run one request through the pipeline.

        Gateway errors become failure envelopes; anything else propagates to
        the transport layer.
        """
        spec = self._operations[request.operation]
        update_request_context(route=spec.name, client_address=request.client_address)
        start_time = time.time()
        error_kind: str | None = None
        try:
            context = await self._admit(request, spec)
            payload = self._parse(request)
            result = await getattr(self, spec.handler)(request, payload, context)
            data = encode_result(result) if spec.encode_result else result
            return GatewayResponse(spec.success_status, ResponseEnvelope.ok(data))
        except GatewayError as e:
            error_kind = e.kind
            return self._reject(e, spec)
        except Exception:
            error_kind = "InternalError"
            raise
        finally:
            duration_ms = (time.time() - start_time) * 1000
            tags = {"error": error_kind} if error_kind else {}
            record_operation(f"gateway.{spec.name}", duration_ms, error_kind is None, **tags)

    async def _admit(self, request: GatewayRequest, spec: OperationSpec) -> AuthContext:
        self.limiter.check_payload_size(request.body_size)

        try:
            credential = extract_credential(request.headers)
            context = await asyncio.to_thread(self.credentials.authenticate, credential)
        except (MissingCredentialError, InvalidCredentialError):
            # Unauthenticated callers are counted by network address
            await self._apply_rate_gate(request.client_address or "unknown")
            raise
        update_request_context(key_name=context.key_name)

        # Checked before authorization so a leaked key alone is not enough
        self.identity_verifier.verify_headers(request.headers)
        self.credentials.authorize(context, spec.permissions)

        await self._apply_rate_gate(context.key_name, context.permissions)
        return context

    async def _apply_rate_gate(self, identity: str, permissions: Iterable[str] = ()) -> None:
        decision = self.rate_gate.admit(identity, permissions)
        if decision.outcome is RateOutcome.REJECTED:
            raise RateLimitedError(
                "Too many requests, please try again later", retry_after=decision.retry_after
            )
        if decision.outcome is RateOutcome.DELAYED:
            await self._sleep(decision.delay_ms / 1000)

    def _parse(self, request: GatewayRequest) -> dict[str, Any]:
        body = request.body
        if body is None and request.raw_body is not None and request.raw_body.strip():
            try:
                body = json.loads(request.raw_body)
            except (ValueError, RecursionError) as e:
                raise InvalidInputError("Request body is not valid JSON") from e
        if body is None:
            body = {}
        if not isinstance(body, Mapping):
            raise InvalidInputError("Request body must be a JSON object")
        request.body = body
        payload = decode(body, max_depth=self.validator.max_depth)
        self.validator.validate(payload)
        return payload

    def _reject(self, error: GatewayError, spec: OperationSpec) -> GatewayResponse:
        level = logging.ERROR if error.status_code >= 500 else logging.WARNING
        contextual_logger.log(
            level,
            f"Request rejected: {error.kind}",
            extra={"route": spec.name, "error_kind": error.kind, "reason": str(error)},
        )
        headers: dict[str, str] = {}
        if isinstance(error, RateLimitedError):
            headers["Retry-After"] = str(error.retry_after)
        return GatewayResponse(
            error.status_code, ResponseEnvelope.fail(error.kind, error.message), headers
        )

    def _collection_ops(self, request: GatewayRequest) -> CollectionOperations:
        database = _check_name(request.database, "database")
        collection = _check_name(request.collection, "collection")
        conn = self.pool.get(request.handle or "")
        return CollectionOperations(
            conn.database(database)[collection], self.retry_policy, self.limiter
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _op_connection_open(self, request, payload, context) -> dict[str, Any]:
        uri = payload.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidInputError("URI is required")
        handle = await self.pool.open(uri, _mapping(payload, "options"))
        contextual_logger.info("Connection created", extra={"handle": handle})
        return {"connectionId": handle}

    async def _op_connection_status(self, request, payload, context) -> dict[str, Any]:
        conn = self.pool.get(request.handle or "")
        return {"id": conn.handle, "isActive": conn.is_active, "createdAt": conn.opened_at}

    async def _op_connection_close(self, request, payload, context) -> dict[str, Any]:
        await self.pool.close(request.handle or "")
        return {"message": "Connection closed successfully"}

    async def _op_connection_ping(self, request, payload, context) -> dict[str, Any]:
        latency_ms = await self.pool.ping(request.handle or "")
        return {"message": "Connection is healthy", "latency": round(latency_ms, 2)}

    async def _op_connection_list(self, request, payload, context) -> dict[str, Any]:
        return self.pool.stats()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def _op_insert_one(self, request, payload, context) -> dict[str, Any]:
        document = _mapping(payload, "document", required=True)
        return await self._collection_ops(request).insert_one(document)

    async def _op_insert_many(self, request, payload, context) -> dict[str, Any]:
        documents = payload.get("documents")
        if not isinstance(documents, list) or not documents:
            raise InvalidInputError("Documents array is required and must not be empty")
        options = _mapping(payload, "options")
        ordered = _flag(options, "ordered", default=True)
        return await self._collection_ops(request).insert_many(documents, ordered=ordered)

    async def _op_find_one(self, request, payload, context) -> dict[str, Any] | None:
        filter = _mapping(payload, "filter")
        self.validator.validate_filter(filter)
        options = _mapping(payload, "options")
        projection = payload.get("projection", options.get("projection"))
        return await self._collection_ops(request).find_one(filter, projection)

    async def _op_find(self, request, payload, context) -> list[dict[str, Any]]:
        filter = _mapping(payload, "filter")
        self.validator.validate_filter(filter)
        options = _mapping(payload, "options")
        self.validator.validate_sort(options.get("sort"))
        return await self._collection_ops(request).find(
            filter,
            limit=options.get("limit"),
            skip=options.get("skip"),
            sort=options.get("sort"),
            projection=options.get("projection"),
            max_time_ms=options.get("maxTimeMS"),
        )

    def _update_args(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], Any, bool]:
        filter = _mapping(payload, "filter", required=True)
        self.validator.validate_filter(filter)
        update = payload.get("update")
        self.validator.validate_update(update)
        upsert = _flag(_mapping(payload, "options"), "upsert")
        return filter, update, upsert

    async def _op_update_one(self, request, payload, context) -> dict[str, Any]:
        filter, update, upsert = self._update_args(payload)
        return await self._collection_ops(request).update_one(filter, update, upsert=upsert)

    async def _op_update_many(self, request, payload, context) -> dict[str, Any]:
        filter, update, upsert = self._update_args(payload)
        return await self._collection_ops(request).update_many(filter, update, upsert=upsert)

    async def _op_delete_one(self, request, payload, context) -> dict[str, Any]:
        filter = _mapping(payload, "filter", required=True)
        self.validator.validate_filter(filter)
        return await self._collection_ops(request).delete_one(filter)

    async def _op_delete_many(self, request, payload, context) -> dict[str, Any]:
        filter = _mapping(payload, "filter", required=True)
        self.validator.validate_filter(filter)
        return await self._collection_ops(request).delete_many(filter)

    async def _op_count(self, request, payload, context) -> dict[str, Any]:
        filter = _mapping(payload, "filter")
        self.validator.validate_filter(filter)
        return await self._collection_ops(request).count(filter)

    async def _op_distinct(self, request, payload, context) -> dict[str, Any]:
        field_name = payload.get("field")
        if not isinstance(field_name, str) or not field_name:
            raise InvalidInputError("Field name is required for distinct operation")
        filter = _mapping(payload, "filter")
        self.validator.validate_filter(filter)
        return await self._collection_ops(request).distinct(field_name, filter)

    async def _op_aggregate(self, request, payload, context) -> list[dict[str, Any]]:
        pipeline = payload.get("pipeline")
        if pipeline is None:
            raise InvalidInputError("pipeline is required")
        self.validator.validate_pipeline(pipeline)
        options = _mapping(payload, "options")
        return await self._collection_ops(request).aggregate(
            pipeline,
            allow_disk_use=_flag(options, "allowDiskUse"),
            max_time_ms=options.get("maxTimeMS"),
        )

    async def _op_bulk_write(self, request, payload, context) -> dict[str, Any]:
        operations = payload.get("operations")
        if not isinstance(operations, list) or not operations:
            raise InvalidInputError("Operations array is required and must not be empty")
        ordered = payload.get("ordered", True)
        if not isinstance(ordered, bool):
            raise InvalidInputError("ordered must be a boolean")
        return await self._collection_ops(request).bulk_write(operations, ordered=ordered)

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    async def _op_create_index(self, request, payload, context) -> dict[str, Any]:
        keys = _mapping(payload, "keys", required=True)
        options = _mapping(payload, "options")
        return await self._collection_ops(request).create_index(keys, options)

    async def _op_list_indexes(self, request, payload, context) -> list[dict[str, Any]]:
        return await self._collection_ops(request).list_indexes()

    async def _op_drop_index(self, request, payload, context) -> dict[str, Any]:
        if not request.index_name:
            raise InvalidInputError("Index name is required")
        return await self._collection_ops(request).drop_index(request.index_name)

    # ------------------------------------------------------------------
    # Batch and admin
    # ------------------------------------------------------------------

    async def _op_batch(self, request, payload, context) -> dict[str, Any]:
        operations = payload.get("operations")
        if not isinstance(operations, list):
            raise InvalidInputError("Operations array is required")
        self.limiter.check_operation_count(len(operations), "batch operations")
        # Routing fields are read undecoded so names such as "2024" stay strings
        wire_operations = request.body.get("operations")
        if not isinstance(wire_operations, list):
            # A tagged Array was parsed without sniffing
            wire_operations = operations

        results: list[Any] = []
        errors: list[dict[str, Any]] = []
        for idx, (item, wire_item) in enumerate(zip(operations, wire_operations)):
            try:
                results.append(await self._batch_item(item, wire_item, context))
            except GatewayError as e:
                results.append(None)
                errors.append({"index": idx, "kind": e.kind, "message": e.message})

        if errors:
            logger.warning(f"Batch completed with {len(errors)} failed operation(s)")
        return {"success": not errors, "results": results, "errors": errors}

    async def _batch_item(self, item: Any, wire_item: Any, context: AuthContext) -> Any:
        if not isinstance(item, Mapping):
            raise InvalidInputError("Batch operation must be an object")
        op_type = wire_item.get("type")
        if not isinstance(op_type, str) or op_type not in BATCH_OPERATIONS:
            raise InvalidInputError(f"Unsupported batch operation type: {op_type}")
        spec = self._operations[op_type]
        self.credentials.authorize(context, spec.permissions)
        sub_request = GatewayRequest(
            operation=op_type,
            handle=wire_item.get("connectionId"),
            database=wire_item.get("database"),
            collection=wire_item.get("collection"),
        )
        result = await getattr(self, spec.handler)(sub_request, item, context)
        return encode_result(result)

    async def _op_health_detailed(self, request, payload, context) -> dict[str, Any]:
        health = await self.health_checker.check_all()
        return {
            "status": health["status"],
            "checks": health["checks"],
            "connections": self.pool.stats(),
            "metrics": get_metrics_collector().get_summary()["summary"],
        }
