"""
Pytest configuration and shared fixtures for MDB_GATEWAY tests.

This module provides:
- Mock motor client / collection fixtures
- A controllable monotonic clock
- Pre-populated credential store and gateway fixtures
- Common request helpers
"""

import os
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from mdb_gateway.auth import CredentialStore
from mdb_gateway.constants import PERMISSION_ADMIN, PERMISSION_READ, PERMISSION_WRITE
from mdb_gateway.database import ConnectionPool, RetryPolicy
from mdb_gateway.gateway import GatewayRequest, RequestGateway
from mdb_gateway.observability import (
    clear_correlation_id,
    clear_request_context,
    get_metrics_collector,
)

PLUGIN_SECRET = "plugin-secret-0123456789"
READER_SECRET = "reader-secret-0123456789"
ADMIN_SECRET = "admin-secret-0123456789"

CLIENT_HEADERS: Dict[str, str] = {
    "user-agent": "SourceMod-MongoDB-Extension/1.0.0",
    "x-sourcemod-extension": "MongoDB-HTTP-Extension",
    "x-extension-version": "1.0.0",
}


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")


def auth_headers(secret: str = PLUGIN_SECRET) -> Dict[str, str]:
    """Client identity headers plus a bearer credential."""
    return {**CLIENT_HEADERS, "authorization": f"Bearer {secret}"}


def make_request(
    operation: str, body: Any = None, secret: str | None = PLUGIN_SECRET, **kwargs: Any
) -> GatewayRequest:
    headers = auth_headers(secret) if secret else dict(CLIENT_HEADERS)
    return GatewayRequest(operation=operation, headers=headers, body=body, **kwargs)


# ============================================================================
# CLOCK
# ============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# MOCK MONGODB FIXTURES
# ============================================================================


def _cursor(documents: list | None = None) -> MagicMock:
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=list(documents or []))
    return cursor


@pytest.fixture
def mock_mongo_collection() -> MagicMock:
    """Create a mock motor collection."""
    collection = MagicMock()
    collection.name = "users"
    collection.find_one = AsyncMock(return_value=None)
    collection.find = MagicMock(return_value=_cursor())
    collection.aggregate = MagicMock(return_value=_cursor())
    collection.list_indexes = MagicMock(
        return_value=_cursor([{"v": 2, "key": {"_id": 1}, "name": "_id_"}])
    )
    collection.insert_one = AsyncMock(
        return_value=MagicMock(inserted_id="test_id", acknowledged=True)
    )
    collection.insert_many = AsyncMock(
        return_value=MagicMock(inserted_ids=["id1", "id2"], acknowledged=True)
    )
    collection.update_one = AsyncMock(
        return_value=MagicMock(
            matched_count=1, modified_count=1, upserted_id=None, acknowledged=True
        )
    )
    collection.update_many = AsyncMock(
        return_value=MagicMock(
            matched_count=2, modified_count=2, upserted_id=None, acknowledged=True
        )
    )
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1, acknowledged=True))
    collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=2, acknowledged=True))
    collection.count_documents = AsyncMock(return_value=0)
    collection.distinct = AsyncMock(return_value=[])
    collection.bulk_write = AsyncMock(
        return_value=MagicMock(
            inserted_count=1,
            matched_count=0,
            modified_count=0,
            deleted_count=0,
            upserted_count=0,
            upserted_ids={},
            acknowledged=True,
        )
    )
    collection.create_index = AsyncMock(return_value="name_1")
    collection.drop_index = AsyncMock(return_value=None)
    return collection


@pytest.fixture
def mock_mongo_database(mock_mongo_collection: MagicMock) -> MagicMock:
    """Create a mock motor database that hands out the mock collection."""
    db = MagicMock()
    db.__getitem__.return_value = mock_mongo_collection
    return db


@pytest.fixture
def mock_mongo_client(mock_mongo_database: MagicMock) -> MagicMock:
    """Create a mock motor client whose ping succeeds."""
    client = MagicMock()
    client.admin = MagicMock()
    client.admin.command = AsyncMock(return_value={"ok": 1})
    client.__getitem__.return_value = mock_mongo_database
    client.close = MagicMock()
    return client


@pytest.fixture
def client_factory(mock_mongo_client: MagicMock) -> MagicMock:
    """Client factory handing out the mock client for any URI."""
    return MagicMock(return_value=mock_mongo_client)


@pytest.fixture
def pool(client_factory: MagicMock, fake_clock: FakeClock) -> ConnectionPool:
    return ConnectionPool(
        max_connections=3,
        ttl_seconds=60,
        sweep_interval_seconds=30,
        handshake_timeout_seconds=1,
        client_factory=client_factory,
        clock=fake_clock,
    )


# ============================================================================
# AUTH / GATEWAY FIXTURES
# ============================================================================


@pytest.fixture
def credentials() -> CredentialStore:
    """Store with a read/write key, a read-only key and an admin key."""
    store = CredentialStore(bcrypt_rounds=4)
    store.add_key("plugin", PLUGIN_SECRET, [PERMISSION_READ, PERMISSION_WRITE])
    store.add_key("reader", READER_SECRET, [PERMISSION_READ])
    store.add_key("admin", ADMIN_SECRET, [PERMISSION_ADMIN])
    return store


@pytest.fixture
def gateway_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def gateway(
    pool: ConnectionPool, credentials: CredentialStore, gateway_sleep: AsyncMock
) -> RequestGateway:
    return RequestGateway(
        pool=pool,
        credentials=credentials,
        retry_policy=RetryPolicy(timeout_seconds=1, sleep=AsyncMock()),
        sleep=gateway_sleep,
    )


# ============================================================================
# ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def reset_observability():
    """Reset process-wide metrics and logging context around each test."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()
    clear_request_context()
    clear_correlation_id()


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """Keep MDB_GATEWAY_* variables from the host out of settings tests."""
    for var in [name for name in os.environ if name.startswith("MDB_GATEWAY_")]:
        monkeypatch.delenv(var, raising=False)
    yield
