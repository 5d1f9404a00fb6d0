"""
Collection operations proxied by the gateway.

``CollectionOperations`` wraps one motor collection. Every call goes through
the retry policy (per-attempt timeout, backoff on transient failures) and
server-side rejections are mapped to gateway errors. Arguments and results
are Documents; wire encoding happens in the gateway layer.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pymongo import DeleteMany, DeleteOne, InsertOne, ReplaceOne, UpdateMany, UpdateOne
from pymongo.errors import BulkWriteError, OperationFailure, PyMongoError

from ..exceptions import GatewayError, InvalidInputError, OperationFailedError
from ..observability import log_operation, record_operation
from .resource_limiter import ResourceLimiter
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

BULK_OPERATION_TYPES = (
    "insertOne",
    "updateOne",
    "updateMany",
    "replaceOne",
    "deleteOne",
    "deleteMany",
)

INDEX_OPTIONS = frozenset(
    {"name", "unique", "sparse", "expireAfterSeconds", "partialFilterExpression", "hidden"}
)


def _sort_spec(sort: Any) -> list[tuple[str, Any]] | None:
    """Convert ``{"field": 1}`` (or a list of pairs) into pymongo's sort list."""
    if not sort:
        return None
    if isinstance(sort, Mapping):
        pairs = list(sort.items())
    elif isinstance(sort, list) and all(
        isinstance(item, (list, tuple)) and len(item) == 2 for item in sort
    ):
        pairs = [(item[0], item[1]) for item in sort]
    else:
        raise InvalidInputError("sort must be an object of field directions")
    for field, direction in pairs:
        if not isinstance(field, str):
            raise InvalidInputError("sort field names must be strings")
        if direction not in (1, -1) and not isinstance(direction, Mapping):
            raise InvalidInputError(f"Invalid sort direction for {field}: {direction!r}")
    return pairs


def _index_keys(keys: Any) -> list[tuple[str, Any]]:
    if not isinstance(keys, Mapping) or not keys:
        raise InvalidInputError("Index keys are required")
    return list(keys.items())


def _require_mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidInputError(f"{name} must be an object")
    return value


def _bulk_request(op_type: str, spec: Mapping[str, Any], filter: Any, upsert: bool) -> Any:
    if op_type == "insertOne":
        return InsertOne(dict(_require_mapping(spec.get("document"), "document")))
    if op_type in ("updateOne", "updateMany"):
        update = spec.get("update")
        if not isinstance(update, (Mapping, list)) or not update:
            raise InvalidInputError(f"{op_type} requires an update document")
        request_type = UpdateOne if op_type == "updateOne" else UpdateMany
        return request_type(filter, update, upsert=upsert)
    if op_type == "replaceOne":
        replacement = _require_mapping(spec.get("replacement"), "replacement")
        return ReplaceOne(filter, dict(replacement), upsert=upsert)
    if op_type == "deleteOne":
        return DeleteOne(filter)
    return DeleteMany(filter)


def build_bulk_requests(operations: list[Any]) -> list[Any]:
    """
    Translate ``[{"insertOne": {"document": {...}}}, ...]`` into pymongo requests.

    Raises:
        InvalidInputError: On an unknown or malformed operation
    """
    requests: list[Any] = []
    for idx, operation in enumerate(operations):
        if not isinstance(operation, Mapping) or len(operation) != 1:
            raise InvalidInputError(
                f"Bulk operation {idx} must have exactly one operation type",
                context={"index": idx},
            )
        op_type, spec = next(iter(operation.items()))
        if op_type not in BULK_OPERATION_TYPES:
            raise InvalidInputError(
                f"Unsupported bulk operation type: {op_type}", context={"index": idx}
            )
        spec = _require_mapping(spec, f"{op_type} at index {idx}")
        filter = _require_mapping(spec.get("filter", {}), "filter")
        upsert = bool(spec.get("upsert", False))

        try:
            requests.append(_bulk_request(op_type, spec, filter, upsert))
        except (TypeError, ValueError) as e:
            raise InvalidInputError(
                f"Invalid {op_type} at index {idx}: {e}", context={"index": idx}
            ) from e
    return requests


class CollectionOperations:
    """
    Document operations against one collection.

    Args:
        collection: motor collection
        retry_policy: Timeout and retry policy for every call
        limiter: Resource limits (result size, maxTimeMS, document size)
    """

    def __init__(
        self,
        collection: Any,
        retry_policy: RetryPolicy | None = None,
        limiter: ResourceLimiter | None = None,
    ) -> None:
        self._collection = collection
        self._retry = retry_policy or RetryPolicy()
        self._limiter = limiter or ResourceLimiter()

    @property
    def name(self) -> str:
        return getattr(self._collection, "name", "?")

    async def _run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        start_time = time.time()
        success = False
        try:
            result = await self._retry.call(func, operation)
            success = True
            return result
        except GatewayError:
            raise
        except BulkWriteError as e:
            details = e.details or {}
            raise OperationFailedError(
                f"{operation} failed",
                context={
                    "write_errors": len(details.get("writeErrors", [])),
                    "inserted": details.get("nInserted", 0),
                },
            ) from e
        except OperationFailure as e:
            raise OperationFailedError(
                f"{operation} failed: {e.details.get('errmsg', str(e)) if e.details else e}",
                context={"code": e.code},
            ) from e
        except PyMongoError as e:
            raise OperationFailedError(f"{operation} failed: {e}") from e
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid {operation} arguments: {e}") from e
        finally:
            duration_ms = (time.time() - start_time) * 1000
            record_operation(f"mongo.{operation}", duration_ms, success=success)
            log_operation(
                logger,
                operation,
                level=logging.DEBUG,
                success=success,
                duration_ms=duration_ms,
                collection=getattr(self._collection, "name", None),
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_one(self, document: Mapping[str, Any]) -> dict[str, Any]:
        document = dict(_require_mapping(document, "document"))
        self._limiter.validate_document_size(document)
        result = await self._run("insertOne", lambda: self._collection.insert_one(document))
        return {"insertedId": result.inserted_id, "acknowledged": result.acknowledged}

    async def insert_many(
        self, documents: list[Mapping[str, Any]], ordered: bool = True
    ) -> dict[str, Any]:
        if not isinstance(documents, list):
            raise InvalidInputError("documents must be a list")
        self._limiter.check_operation_count(len(documents), "documents")
        documents = [dict(_require_mapping(doc, "document")) for doc in documents]
        self._limiter.validate_documents_size(documents)
        result = await self._run(
            "insertMany", lambda: self._collection.insert_many(documents, ordered=ordered)
        )
        return {
            "insertedCount": len(result.inserted_ids),
            "insertedIds": list(result.inserted_ids),
            "acknowledged": result.acknowledged,
        }

    async def update_one(
        self, filter: Mapping[str, Any], update: Any, upsert: bool = False
    ) -> dict[str, Any]:
        result = await self._run(
            "updateOne", lambda: self._collection.update_one(filter, update, upsert=upsert)
        )
        return self._update_result(result)

    async def update_many(
        self, filter: Mapping[str, Any], update: Any, upsert: bool = False
    ) -> dict[str, Any]:
        result = await self._run(
            "updateMany", lambda: self._collection.update_many(filter, update, upsert=upsert)
        )
        return self._update_result(result)

    @staticmethod
    def _update_result(result: Any) -> dict[str, Any]:
        return {
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "upsertedId": result.upserted_id,
            "upsertedCount": 1 if result.upserted_id is not None else 0,
            "acknowledged": result.acknowledged,
        }

    async def delete_one(self, filter: Mapping[str, Any]) -> dict[str, Any]:
        result = await self._run("deleteOne", lambda: self._collection.delete_one(filter))
        return {"deletedCount": result.deleted_count, "acknowledged": result.acknowledged}

    async def delete_many(self, filter: Mapping[str, Any]) -> dict[str, Any]:
        result = await self._run("deleteMany", lambda: self._collection.delete_many(filter))
        return {"deletedCount": result.deleted_count, "acknowledged": result.acknowledged}

    async def bulk_write(self, operations: list[Any], ordered: bool = True) -> dict[str, Any]:
        if not isinstance(operations, list):
            raise InvalidInputError("operations must be a list")
        self._limiter.check_operation_count(len(operations), "operations")
        requests = build_bulk_requests(operations)
        result = await self._run(
            "bulkWrite", lambda: self._collection.bulk_write(requests, ordered=ordered)
        )
        return {
            "insertedCount": result.inserted_count,
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "deletedCount": result.deleted_count,
            "upsertedCount": result.upserted_count,
            "upsertedIds": {str(k): v for k, v in (result.upserted_ids or {}).items()},
            "acknowledged": result.acknowledged,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(
        self, filter: Mapping[str, Any] | None = None, projection: Any = None
    ) -> dict[str, Any] | None:
        max_time_ms = self._limiter.enforce_query_timeout()
        return await self._run(
            "findOne",
            lambda: self._collection.find_one(
                filter or {}, projection, max_time_ms=max_time_ms
            ),
        )

    async def find(
        self,
        filter: Mapping[str, Any] | None = None,
        limit: Any = None,
        skip: Any = None,
        sort: Any = None,
        projection: Any = None,
        max_time_ms: Any = None,
    ) -> list[dict[str, Any]]:
        limit = self._limiter.enforce_result_limit(limit)
        if skip is None:
            skip = 0
        if isinstance(skip, bool) or not isinstance(skip, int) or skip < 0:
            raise InvalidInputError("skip must be a non-negative integer")
        sort_spec = _sort_spec(sort)
        max_time_ms = self._limiter.enforce_query_timeout(max_time_ms)

        def query() -> Awaitable[list[dict[str, Any]]]:
            cursor = self._collection.find(
                filter or {},
                projection,
                skip=skip,
                limit=limit,
                sort=sort_spec,
                max_time_ms=max_time_ms,
            )
            return cursor.to_list(length=limit)

        return await self._run("find", query)

    async def count(self, filter: Mapping[str, Any] | None = None) -> dict[str, Any]:
        max_time_ms = self._limiter.enforce_query_timeout()
        count = await self._run(
            "count",
            lambda: self._collection.count_documents(filter or {}, maxTimeMS=max_time_ms),
        )
        return {"count": count}

    async def distinct(
        self, field: str, filter: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        if not isinstance(field, str) or not field:
            raise InvalidInputError("Field name is required for distinct operation")
        max_time_ms = self._limiter.enforce_query_timeout()
        values = await self._run(
            "distinct",
            lambda: self._collection.distinct(field, filter or {}, maxTimeMS=max_time_ms),
        )
        return {"values": values}

    async def aggregate(
        self, pipeline: list[Any], allow_disk_use: bool = False, max_time_ms: Any = None
    ) -> list[dict[str, Any]]:
        if not isinstance(pipeline, list):
            raise InvalidInputError("pipeline must be a list")
        max_time_ms = self._limiter.enforce_query_timeout(max_time_ms)
        length = self._limiter.max_result_size

        def query() -> Awaitable[list[dict[str, Any]]]:
            cursor = self._collection.aggregate(
                pipeline, allowDiskUse=allow_disk_use, maxTimeMS=max_time_ms
            )
            return cursor.to_list(length=length)

        return await self._run("aggregate", query)

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    async def create_index(
        self, keys: Any, options: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        key_list = _index_keys(keys)
        options = dict(options or {})
        unknown = set(options) - INDEX_OPTIONS
        if unknown:
            raise InvalidInputError(f"Unsupported index options: {sorted(unknown)}")
        name = await self._run(
            "createIndex", lambda: self._collection.create_index(key_list, **options)
        )
        return {"name": name}

    async def list_indexes(self) -> list[dict[str, Any]]:
        indexes = await self._run(
            "listIndexes", lambda: self._collection.list_indexes().to_list(length=None)
        )
        return [dict(index) for index in indexes]

    async def drop_index(self, name: str) -> dict[str, Any]:
        if not isinstance(name, str) or not name or name == "*":
            raise InvalidInputError("A single index name is required")
        await self._run("dropIndex", lambda: self._collection.drop_index(name))
        return {"dropped": True, "name": name}
