"""
Unit tests for the client identity check.
"""

import pytest

from mdb_gateway.auth import ClientIdentityVerifier
from mdb_gateway.exceptions import InvalidClientError
from tests.conftest import CLIENT_HEADERS


@pytest.mark.unit
class TestClientIdentityVerifier:
    """Test ClientIdentityVerifier functionality."""

    def test_valid_headers(self):
        ClientIdentityVerifier().verify_headers(CLIENT_HEADERS)

    def test_wrong_user_agent(self):
        headers = {**CLIENT_HEADERS, "user-agent": "curl/8.0"}
        with pytest.raises(InvalidClientError, match="Invalid client"):
            ClientIdentityVerifier().verify_headers(headers)

    def test_missing_user_agent(self):
        headers = {k: v for k, v in CLIENT_HEADERS.items() if k != "user-agent"}
        with pytest.raises(InvalidClientError):
            ClientIdentityVerifier().verify_headers(headers)

    def test_wrong_extension(self):
        headers = {**CLIENT_HEADERS, "x-sourcemod-extension": "Something-Else"}
        with pytest.raises(InvalidClientError, match="extension"):
            ClientIdentityVerifier().verify_headers(headers)

    def test_version_is_optional(self):
        headers = {k: v for k, v in CLIENT_HEADERS.items() if k != "x-extension-version"}
        ClientIdentityVerifier().verify_headers(headers)

    def test_custom_markers(self):
        verifier = ClientIdentityVerifier(user_agent_marker="MyBot", extension_marker="ext-1")
        verifier.verify("MyBot/2.0", "ext-1")
        with pytest.raises(InvalidClientError):
            verifier.verify(CLIENT_HEADERS["user-agent"], CLIENT_HEADERS["x-sourcemod-extension"])

    def test_not_required(self):
        ClientIdentityVerifier(required=False).verify(None, None)

    def test_status(self):
        with pytest.raises(InvalidClientError) as exc_info:
            ClientIdentityVerifier().verify(None, None)
        assert exc_info.value.status_code == 403
        assert exc_info.value.kind == "InvalidClient"
