"""
Unit tests for the HTTP surface.

Drives the FastAPI application through Starlette's TestClient with a mock
motor client behind the pool.
"""

import pytest
from fastapi.testclient import TestClient

from mdb_gateway.config import GatewaySettings
from mdb_gateway.gateway import create_app
from tests.conftest import CLIENT_HEADERS

API_KEY = "route-test-key-0123456789"
URI = "mongodb://localhost:27017"
USERS = "/api/v1/connections/{handle}/databases/app/collections/users"


def key_headers(api_key: str = API_KEY) -> dict:
    return {**CLIENT_HEADERS, "X-API-Key": api_key}


def make_settings(**overrides) -> GatewaySettings:
    values = {
        "api_key": API_KEY,
        "api_key_permissions": ["read", "write"],
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return GatewaySettings(**values)


@pytest.fixture
def client(client_factory):
    app = create_app(make_settings(), client_factory=client_factory)
    with TestClient(app) as test_client:
        yield test_client


def open_connection(client: TestClient) -> str:
    response = client.post("/api/v1/connections", json={"uri": URI}, headers=key_headers())
    assert response.status_code == 201, response.text
    return response.json()["data"]["connectionId"]


@pytest.mark.unit
class TestPublicRoutes:
    """Routes that need no credential."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "healthy"
        assert body["timestamp"].endswith("Z")

    def test_unknown_route(self, client):
        response = client.get("/api/v1/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"] == {"kind": "NotFound", "message": "Endpoint not found"}

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]


@pytest.mark.unit
class TestAuthenticatedRoutes:
    """Envelopes and statuses for gateway-backed routes."""

    def test_missing_credential(self, client):
        response = client.post("/api/v1/connections", json={"uri": URI}, headers=CLIENT_HEADERS)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "MissingCredential"
        assert "data" not in body
        assert response.headers["X-Request-ID"]

    def test_bearer_credential(self, client):
        headers = {**CLIENT_HEADERS, "Authorization": f"Bearer {API_KEY}"}
        response = client.post("/api/v1/connections", json={"uri": URI}, headers=headers)
        assert response.status_code == 201

    def test_invalid_client(self, client):
        response = client.post(
            "/api/v1/connections", json={"uri": URI}, headers={"X-API-Key": API_KEY}
        )
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "InvalidClient"

    def test_admin_route_forbidden(self, client):
        response = client.get("/api/v1/connections", headers=key_headers())
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "InsufficientPermission"

    def test_malformed_json(self, client):
        handle = open_connection(client)

        response = client.post(
            USERS.format(handle=handle) + "/documents/find",
            content=b"{not json",
            headers={**key_headers(), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == {
            "kind": "InvalidInput",
            "message": "Request body is not valid JSON",
        }

    def test_insert_then_find_one(self, client, mock_mongo_collection):
        handle = open_connection(client)
        mock_mongo_collection.find_one.return_value = {"name": "Ana", "level": 3, "vip": True}

        inserted = client.post(
            USERS.format(handle=handle) + "/documents",
            json={"document": {"name": "Ana", "level": 3, "vip": "true"}},
            headers=key_headers(),
        )
        found = client.post(
            USERS.format(handle=handle) + "/documents/findOne",
            json={"filter": {"name": "Ana"}},
            headers=key_headers(),
        )

        assert inserted.status_code == 201
        mock_mongo_collection.insert_one.assert_awaited_once_with(
            {"name": "Ana", "level": 3, "vip": True}
        )
        assert found.status_code == 200
        assert found.json()["data"] == {"name": "Ana", "level": 3, "vip": "true"}

    def test_connection_status_and_close(self, client):
        handle = open_connection(client)
        path = f"/api/v1/connections/{handle}"

        status = client.get(path, headers=key_headers())
        closed = client.delete(path, headers=key_headers())
        missing = client.get(path, headers=key_headers())

        assert status.json()["data"]["isActive"] == "true"
        assert closed.json()["data"] == {"message": "Connection closed successfully"}
        assert missing.status_code == 404
        assert missing.json()["error"]["kind"] == "ConnectionNotFound"

    def test_drop_index_path_parameter(self, client, mock_mongo_collection):
        handle = open_connection(client)

        response = client.delete(
            USERS.format(handle=handle) + "/indexes/name_1", headers=key_headers()
        )

        assert response.status_code == 200
        mock_mongo_collection.drop_index.assert_awaited_once_with("name_1")

    def test_batch(self, client):
        handle = open_connection(client)
        body = {
            "operations": [
                {
                    "type": "count",
                    "connectionId": handle,
                    "database": "app",
                    "collection": "users",
                }
            ]
        }

        response = client.post("/api/v1/batch", json=body, headers=key_headers())

        assert response.status_code == 200
        assert response.json()["data"]["errors"][0]["kind"] == "InvalidInput"

    def test_payload_too_large(self, client_factory):
        app = create_app(make_settings(max_payload_bytes=64), client_factory=client_factory)
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/connections",
                json={"uri": URI, "padding": "x" * 200},
                headers=key_headers(),
            )

        assert response.status_code == 413
        assert response.json()["error"]["kind"] == "PayloadTooLarge"

    def test_oversized_malformed_body_is_too_large(self, client_factory):
        app = create_app(make_settings(max_payload_bytes=64), client_factory=client_factory)
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/connections",
                content=b"{" + b"x" * 200,
                headers={**key_headers(), "Content-Type": "application/json"},
            )

        assert response.status_code == 413
        assert response.json()["error"]["kind"] == "PayloadTooLarge"

    def test_streamed_body_is_capped(self, client_factory):
        def chunks():
            for _ in range(10):
                yield b"x" * 32

        app = create_app(make_settings(max_payload_bytes=64), client_factory=client_factory)
        with TestClient(app) as client:
            response = client.post("/api/v1/connections", content=chunks(), headers=key_headers())

        assert response.status_code == 413
        assert response.json()["error"]["kind"] == "PayloadTooLarge"

    def test_malformed_json_needs_credentials_first(self, client):
        response = client.post(
            "/api/v1/connections",
            content=b"{not json",
            headers={**CLIENT_HEADERS, "Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "MissingCredential"


@pytest.mark.unit
class TestRateLimiting:
    """Rate gate over HTTP."""

    def test_retry_after_header(self, client_factory):
        settings = make_settings(rate_max_requests=2, slow_down_after=2)
        with TestClient(create_app(settings, client_factory=client_factory)) as client:
            statuses = [
                client.post("/api/v1/connections/missing/ping", headers=key_headers()).status_code
                for _ in range(3)
            ]
            limited = client.post("/api/v1/connections/missing/ping", headers=key_headers())

        assert statuses == [404, 404, 429]
        assert limited.json()["error"]["kind"] == "RateLimited"
        assert int(limited.headers["Retry-After"]) > 0


@pytest.mark.unit
class TestLifespan:
    """Startup and shutdown."""

    def test_pool_closed_on_shutdown(self, client_factory, mock_mongo_client):
        app = create_app(make_settings(), client_factory=client_factory)

        with TestClient(app) as client:
            open_connection(client)
            assert len(app.state.gateway.pool) == 1

        assert len(app.state.gateway.pool) == 0
        mock_mongo_client.close.assert_called_once()
