"""
Constants for MDB_GATEWAY.

This module contains all shared constants used across the codebase to avoid
magic numbers and improve maintainability.
"""

from typing import Final

# ============================================================================
# CONNECTION POOL CONSTANTS
# ============================================================================

DEFAULT_MAX_CONNECTIONS: Final[int] = 10
"""Default maximum number of pooled connections (handles) open at once."""

DEFAULT_CONNECTION_TTL_SECONDS: Final[int] = 30 * 60  # 30 minutes
"""Idle time after which a pooled connection is evicted (seconds)."""

DEFAULT_SWEEP_INTERVAL_SECONDS: Final[int] = 5 * 60  # 5 minutes
"""Interval between background eviction sweeps (seconds)."""

DEFAULT_HANDSHAKE_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for the liveness probe performed when a connection is opened."""

# Per-client driver options (applied to each AsyncIOMotorClient the pool creates)
DEFAULT_CLIENT_MAX_POOL_SIZE: Final[int] = 10
"""Default driver-level socket pool size for each pooled client."""

MAX_CLIENT_MAX_POOL_SIZE: Final[int] = 100
"""Upper bound accepted for a caller-supplied driver pool size."""

DEFAULT_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 5000
"""Default server selection timeout in milliseconds."""

MIN_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 1000
MAX_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 60000

DEFAULT_SOCKET_TIMEOUT_MS: Final[int] = 30000
"""Default socket timeout in milliseconds."""

DEFAULT_CONNECT_TIMEOUT_MS: Final[int] = 10000
"""Default connect timeout in milliseconds."""

DEFAULT_MAX_IDLE_TIME_MS: Final[int] = 30000
"""Default maximum idle time before the driver closes a socket (milliseconds)."""

ALLOWED_URI_SCHEMES: Final[tuple[str, ...]] = ("mongodb://", "mongodb+srv://")
"""URI prefixes accepted when opening a connection."""

# ============================================================================
# OPERATION / RETRY CONSTANTS
# ============================================================================

DEFAULT_OPERATION_TIMEOUT_SECONDS: Final[float] = 30.0
"""Bounded timeout applied to every proxied operation (seconds)."""

DEFAULT_MAX_RETRIES: Final[int] = 3
"""Retries after the first attempt for transient upstream failures."""

DEFAULT_RETRY_BASE_DELAY_SECONDS: Final[float] = 0.1
"""First backoff delay; doubles on every further attempt (100ms, 200ms, 400ms)."""

DEFAULT_RETRY_MAX_DELAY_SECONDS: Final[float] = 2.0
"""Ceiling for a single backoff delay."""

# ============================================================================
# QUERY SECURITY & RESOURCE LIMITS
# ============================================================================

DEFAULT_MAX_TIME_MS: Final[int] = 30000
"""Default query timeout in milliseconds (30 seconds)."""

MAX_QUERY_TIME_MS: Final[int] = 300000
"""Maximum allowed query timeout in milliseconds (5 minutes)."""

MAX_QUERY_RESULT_SIZE: Final[int] = 1000
"""Maximum number of documents that can be returned in a single query."""

MAX_DOCUMENT_SIZE: Final[int] = 16 * 1024 * 1024
"""Maximum document size in bytes (16MB MongoDB limit)."""

DEFAULT_MAX_PAYLOAD_BYTES: Final[int] = 10 * 1024 * 1024
"""Maximum accepted request body size in bytes (10MB)."""

MAX_BULK_OPERATIONS: Final[int] = 1000
"""Maximum number of operations in a single bulkWrite or batch request."""

MAX_PIPELINE_STAGES: Final[int] = 50
"""Maximum number of stages allowed in an aggregation pipeline."""

MAX_SORT_FIELDS: Final[int] = 10
"""Maximum number of fields that can be sorted in a single query."""

MAX_QUERY_DEPTH: Final[int] = 10
"""Maximum nesting depth for request bodies."""

MAX_OBJECT_KEYS: Final[int] = 100
"""Maximum number of keys in any single object of a request body."""

MAX_KEY_LENGTH: Final[int] = 100
"""Maximum length of a single key in a request body."""

# Regex limits (prevent ReDoS attacks)
MAX_REGEX_LENGTH: Final[int] = 1000
"""Maximum length of regex patterns to prevent ReDoS attacks."""

MAX_REGEX_COMPLEXITY: Final[int] = 50
"""Maximum complexity score for regex patterns (prevents ReDoS)."""

OPERATOR_PREFIX: Final[str] = "$"
"""Leading character that marks a query/update/aggregation operator key."""

ALLOWED_QUERY_OPERATORS: Final[tuple[str, ...]] = (
    # Comparison
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin",
    # Logical
    "$and", "$or", "$not", "$nor",
    # Element
    "$exists", "$type",
    # Evaluation
    "$regex", "$options", "$mod",
    "$text", "$search", "$language", "$caseSensitive", "$diacriticSensitive",
    # Array
    "$all", "$elemMatch", "$size",
)  # fmt: skip
"""Query operators accepted in filters."""

ALLOWED_UPDATE_OPERATORS: Final[tuple[str, ...]] = (
    "$set", "$unset", "$setOnInsert", "$inc", "$mul", "$rename", "$min", "$max",
    "$currentDate", "$bit",
    # Array updates and their modifiers
    "$addToSet", "$pop", "$pull", "$push", "$pullAll",
    "$each", "$position", "$slice", "$sort",
)  # fmt: skip
"""Update operators accepted in update documents."""

ALLOWED_AGGREGATION_OPERATORS: Final[tuple[str, ...]] = (
    # Stages
    "$match", "$group", "$sort", "$limit", "$skip", "$project", "$unwind",
    "$lookup", "$addFields", "$set", "$unset", "$replaceRoot", "$facet",
    "$bucket", "$bucketAuto", "$sortByCount", "$count", "$sample",
    # Accumulators
    "$sum", "$avg", "$min", "$max", "$first", "$last", "$push", "$addToSet",
)  # fmt: skip
"""Aggregation stages and accumulators accepted in pipelines."""

DANGEROUS_OPERATORS: Final[tuple[str, ...]] = (
    "$where",  # JavaScript execution (security risk)
    "$eval",  # JavaScript evaluation (deprecated, security risk)
    "$function",  # JavaScript functions (security risk)
    "$accumulator",  # Can be abused for code execution
)
"""MongoDB operators that can never be added to the allowlist."""

# ============================================================================
# RATE LIMITING CONSTANTS
# ============================================================================

DEFAULT_RATE_WINDOW_SECONDS: Final[int] = 15 * 60  # 15 minutes
"""Length of a rate limiting window (seconds)."""

DEFAULT_RATE_MAX_REQUESTS: Final[int] = 1000
"""Hard cap of requests per identity per window."""

DEFAULT_SLOW_DOWN_AFTER: Final[int] = 100
"""Requests per window allowed before progressive delay starts."""

DEFAULT_SLOW_DOWN_DELAY_MS: Final[int] = 500
"""Delay added per request over the slow-down threshold (milliseconds)."""

MAX_TRACKED_IDENTITIES: Final[int] = 10000
"""Number of tracked identities after which stale rate states are purged."""

# ============================================================================
# AUTHENTICATION CONSTANTS
# ============================================================================

PERMISSION_READ: Final[str] = "read"
PERMISSION_WRITE: Final[str] = "write"
PERMISSION_ADMIN: Final[str] = "admin"

SUPPORTED_PERMISSIONS: Final[tuple[str, ...]] = (
    PERMISSION_READ,
    PERMISSION_WRITE,
    PERMISSION_ADMIN,
)

DEFAULT_BCRYPT_ROUNDS: Final[int] = 12
"""bcrypt work factor used when hashing API keys."""

API_KEY_BYTES: Final[int] = 32
"""Random bytes in a provisioned API key (hex encoded on output)."""

CLIENT_USER_AGENT_MARKER: Final[str] = "SourceMod-MongoDB-Extension"
"""Substring every recognized client carries in its User-Agent."""

CLIENT_EXTENSION_MARKER: Final[str] = "MongoDB-HTTP-Extension"
"""Fixed value of the client extension header."""

# Request headers
HEADER_AUTHORIZATION: Final[str] = "Authorization"
HEADER_API_KEY: Final[str] = "X-API-Key"
HEADER_CLIENT_API_KEY: Final[str] = "X-SourceMod-API-Key"
HEADER_CLIENT_EXTENSION: Final[str] = "X-SourceMod-Extension"
HEADER_CLIENT_VERSION: Final[str] = "X-Extension-Version"
HEADER_REQUEST_ID: Final[str] = "X-Request-ID"

# ============================================================================
# CODEC CONSTANTS
# ============================================================================

TYPE_TAG_SUFFIX: Final[str] = "__type"
"""Suffix of the sidecar key recording a wire field's extended type."""

MAX_WIRE_DEPTH: Final[int] = 100
"""Deepest object nesting the decoder follows before rejecting a record."""

TAG_OBJECT_ID: Final[str] = "ObjectId"
TAG_DATETIME: Final[str] = "Date"
TAG_DOCUMENT: Final[str] = "Document"
TAG_ARRAY: Final[str] = "Array"
TAG_STRING: Final[str] = "String"

TAG_ALIASES: Final[dict[str, str]] = {
    "ObjectIdentifier": TAG_OBJECT_ID,
    "DateTime": TAG_DATETIME,
}
"""Alternate tag spellings accepted when decoding."""
