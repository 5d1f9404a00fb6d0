"""
Connection pool for MDB_GATEWAY.

Owns every upstream MongoDB client the gateway opens on behalf of callers.
Callers only ever see an opaque handle; the URI stays inside the pool.

Capacity is reserved and committed under one asyncio.Lock, so concurrent
``open`` calls and the eviction sweep can never push the pool past
``max_connections``. The handshake runs outside the lock; a failed or
cancelled handshake releases its reservation and closes its client.

Usage:
    pool = ConnectionPool(max_connections=10)
    pool.start()                      # background eviction sweep
    handle = await pool.open("mongodb://localhost:27017")
    conn = pool.get(handle)
    await conn.client["app"]["users"].find_one({})
    await pool.close(handle)
    await pool.shutdown()
"""

import asyncio
import contextlib
import logging
import re
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError as MongoConfigurationError
from pymongo.errors import PyMongoError

from ..constants import (
    ALLOWED_URI_SCHEMES,
    DEFAULT_CLIENT_MAX_POOL_SIZE,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_CONNECTION_TTL_SECONDS,
    DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_MAX_IDLE_TIME_MS,
    DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
    DEFAULT_SOCKET_TIMEOUT_MS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    MAX_CLIENT_MAX_POOL_SIZE,
    MAX_SERVER_SELECTION_TIMEOUT_MS,
    MIN_SERVER_SELECTION_TIMEOUT_MS,
)
from ..exceptions import (
    CapacityExceededError,
    ConnectionNotFoundError,
    InvalidInputError,
    UpstreamUnavailableError,
)
from ..observability import get_logger, record_operation

logger = logging.getLogger(__name__)
contextual_logger = get_logger(__name__)

ClientFactory = Callable[[str, dict[str, Any]], Any]

_CREDENTIALS_RE = re.compile(r"//[^@/]+@")

# option name -> (default, minimum, maximum)
_CLIENT_OPTION_BOUNDS: dict[str, tuple[int, int, int | None]] = {
    "maxPoolSize": (DEFAULT_CLIENT_MAX_POOL_SIZE, 1, MAX_CLIENT_MAX_POOL_SIZE),
    "serverSelectionTimeoutMS": (
        DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
        MIN_SERVER_SELECTION_TIMEOUT_MS,
        MAX_SERVER_SELECTION_TIMEOUT_MS,
    ),
    "socketTimeoutMS": (DEFAULT_SOCKET_TIMEOUT_MS, 1, None),
    "connectTimeoutMS": (DEFAULT_CONNECT_TIMEOUT_MS, 1, None),
    "maxIdleTimeMS": (DEFAULT_MAX_IDLE_TIME_MS, 1, None),
}


class ConnectionState(str, Enum):
    """Lifecycle states of a pooled connection. CLOSED is terminal."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class PooledConnection:
    """
    One upstream client owned by the pool.

    ``created_at`` and ``last_used`` are readings of the pool's monotonic
    clock; ``opened_at`` is wall-clock time for reporting only.
    """

    handle: str
    uri: str = field(repr=False)
    created_at: float
    last_used: float
    client: Any = field(default=None, repr=False)
    state: ConnectionState = ConnectionState.CONNECTING
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def touch(self, now: float) -> None:
        """Refresh ``last_used``; never moves it backwards."""
        self.last_used = max(self.last_used, now)

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_used)

    def database(self, name: str) -> Any:
        return self.client[name]


def mask_uri(uri: str) -> str:
    """Hide credentials in a connection URI for logging."""
    return _CREDENTIALS_RE.sub("//***:***@", uri)


def build_client_options(options: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """
    Merge caller-supplied driver options with defaults.

    Only the options in ``_CLIENT_OPTION_BOUNDS`` are accepted, each as an
    integer within bounds.

    Raises:
        InvalidInputError: On an unknown option or an out-of-range value
    """
    options = dict(options or {})
    unknown = set(options) - set(_CLIENT_OPTION_BOUNDS)
    if unknown:
        raise InvalidInputError(f"Unsupported connection options: {sorted(unknown)}")

    resolved: dict[str, Any] = {}
    for name, (default, minimum, maximum) in _CLIENT_OPTION_BOUNDS.items():
        value = options.get(name)
        if value is None:
            resolved[name] = default
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidInputError(f"Connection option {name} must be an integer")
        if value < minimum or (maximum is not None and value > maximum):
            bounds = f"{minimum}..{maximum}" if maximum is not None else f">= {minimum}"
            raise InvalidInputError(f"Connection option {name} must be in range {bounds}")
        resolved[name] = value
    return resolved


def default_client_factory(uri: str, options: dict[str, Any]) -> AsyncIOMotorClient:
    """Create a motor client that decodes datetimes as aware UTC values."""
    return AsyncIOMotorClient(
        uri,
        appname="MDB_GATEWAY",
        tz_aware=True,
        tzinfo=timezone.utc,
        retryWrites=True,
        retryReads=True,
        **options,
    )


class ConnectionPool:
    """
    Handle-indexed pool of upstream MongoDB clients.

    Args:
        max_connections: Maximum number of open (or opening) connections
        ttl_seconds: Idle time after which a connection is evicted
        sweep_interval_seconds: Interval of the background eviction sweep
        handshake_timeout_seconds: Timeout for the ping performed on open
        client_factory: Callable building a client from (uri, options)
        clock: Monotonic clock used for idle accounting
    """

    def __init__(
        self,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        ttl_seconds: float = DEFAULT_CONNECTION_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        handshake_timeout_seconds: float = DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.max_connections = max_connections
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.handshake_timeout_seconds = handshake_timeout_seconds
        self._client_factory = client_factory or default_client_factory
        self._clock = clock

        self._connections: dict[str, PooledConnection] = {}
        self._reserved = 0
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, uri: str, options: Mapping[str, Any] | None = None) -> str:
        """
        Open a connection and return its handle.

        Raises:
            InvalidInputError: If the URI or options are invalid
            CapacityExceededError: If the pool is full after a sweep
            UpstreamUnavailableError: If the handshake fails or times out
        """
        if not isinstance(uri, str) or not uri.startswith(ALLOWED_URI_SCHEMES):
            raise InvalidInputError("Invalid MongoDB URI format")
        client_options = build_client_options(options)

        async with self._lock:
            if self._in_use() >= self.max_connections:
                self._sweep_locked()
            if self._in_use() >= self.max_connections:
                logger.warning(
                    f"Connection pool at capacity ({self.max_connections}); rejecting open"
                )
                raise CapacityExceededError(self.max_connections)
            self._reserved += 1

        now = self._clock()
        conn = PooledConnection(
            handle=str(uuid.uuid4()), uri=uri, created_at=now, last_used=now
        )
        start_time = time.time()
        committed = False
        try:
            conn.client = self._client_factory(uri, client_options)
            await asyncio.wait_for(
                conn.client.admin.command("ping"), timeout=self.handshake_timeout_seconds
            )
            # Commit without awaiting between release and registration
            self._reserved -= 1
            conn.state = ConnectionState.ACTIVE
            self._connections[conn.handle] = conn
            committed = True
        except MongoConfigurationError as e:
            raise InvalidInputError(f"Invalid MongoDB URI: {e}") from e
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(
                f"Connection handshake timed out after {self.handshake_timeout_seconds}s"
            ) from e
        except (PyMongoError, OSError) as e:
            raise UpstreamUnavailableError(f"Failed to connect to MongoDB: {e}") from e
        finally:
            duration_ms = (time.time() - start_time) * 1000
            record_operation("pool.open", duration_ms, success=committed)
            if not committed:
                self._reserved -= 1
                conn.state = ConnectionState.CLOSED
                self._close_client(conn)

        contextual_logger.info(
            "MongoDB connection opened",
            extra={
                "handle": conn.handle,
                "uri": mask_uri(uri),
                "duration_ms": round(duration_ms, 2),
            },
        )
        return conn.handle

    def get(self, handle: str) -> PooledConnection:
        """
        Resolve an active handle and refresh its last-used time.

        Raises:
            ConnectionNotFoundError: If the handle is unknown or closed
        """
        conn = self._connections.get(handle)
        if conn is None or not conn.is_active:
            raise ConnectionNotFoundError(handle)
        conn.touch(self._clock())
        return conn

    async def close(self, handle: str) -> None:
        """
        Close a connection and remove it from the pool immediately.

        Raises:
            ConnectionNotFoundError: If the handle is unknown or closed
        """
        async with self._lock:
            conn = self._connections.pop(handle, None)
        if conn is None:
            raise ConnectionNotFoundError(handle)
        conn.state = ConnectionState.CLOSED
        self._close_client(conn)
        logger.info(f"MongoDB connection closed: {handle}")

    async def ping(self, handle: str) -> float:
        """
        Probe a pooled connection.

        Returns:
            Round-trip latency in milliseconds

        Raises:
            ConnectionNotFoundError: If the handle is unknown or closed
            UpstreamUnavailableError: If the ping fails or times out
        """
        conn = self.get(handle)
        start_time = time.time()
        try:
            await asyncio.wait_for(
                conn.client.admin.command("ping"), timeout=self.handshake_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError("Ping timed out", context={"handle": handle}) from e
        except (PyMongoError, OSError) as e:
            raise UpstreamUnavailableError(
                f"Ping failed: {e}", context={"handle": handle}
            ) from e
        return (time.time() - start_time) * 1000

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """
        Close connections idle longer than the TTL or no longer active.

        Returns:
            Number of connections closed
        """
        async with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [
            handle
            for handle, conn in self._connections.items()
            if not conn.is_active or conn.idle_seconds(now) > self.ttl_seconds
        ]
        for handle in expired:
            conn = self._connections.pop(handle)
            conn.state = ConnectionState.CLOSED
            self._close_client(conn)
        if expired:
            logger.info(f"Evicted {len(expired)} idle MongoDB connection(s)")
        return len(expired)

    def start(self) -> None:
        """Start the background eviction sweep (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except (PyMongoError, OSError, RuntimeError) as e:
                logger.error(f"Error during connection sweep: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """
        Stop the sweeper and close every connection.

        This method is idempotent - it's safe to call multiple times.
        """
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            conn.state = ConnectionState.CLOSED
            self._close_client(conn)
        if connections:
            logger.info(f"Closed {len(connections)} MongoDB connection(s) on shutdown")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _in_use(self) -> int:
        return len(self._connections) + self._reserved

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, handle: object) -> bool:
        conn = self._connections.get(handle)  # type: ignore[arg-type]
        return conn is not None and conn.is_active

    def stats(self) -> dict[str, Any]:
        """
        Pool statistics. URIs are never included.
        """
        now = self._clock()
        active = [conn for conn in self._connections.values() if conn.is_active]
        return {
            "total_connections": len(self._connections),
            "active_connections": len(active),
            "pending_connections": self._reserved,
            "max_connections": self.max_connections,
            "ttl_seconds": self.ttl_seconds,
            "connections": [
                {
                    "id": conn.handle,
                    "opened_at": conn.opened_at.isoformat(),
                    "age_seconds": round(now - conn.created_at, 3),
                    "idle_seconds": round(conn.idle_seconds(now), 3),
                }
                for conn in active
            ],
        }

    @staticmethod
    def _close_client(conn: PooledConnection) -> None:
        if conn.client is None:
            return
        try:
            conn.client.close()
        except (PyMongoError, OSError, RuntimeError) as e:
            logger.warning(f"Error closing MongoDB client {conn.handle}: {e}")
