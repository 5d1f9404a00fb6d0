"""
Client identity check.

Only the expected constrained client may call the gateway, whatever
credential it holds. The client declares itself with a User-Agent
containing a fixed identifier and a fixed extension marker header.
"""

import logging
from collections.abc import Mapping

from ..constants import (
    CLIENT_EXTENSION_MARKER,
    CLIENT_USER_AGENT_MARKER,
    HEADER_CLIENT_EXTENSION,
    HEADER_CLIENT_VERSION,
)
from ..exceptions import InvalidClientError

logger = logging.getLogger(__name__)


class ClientIdentityVerifier:
    """
    Verifies the client identity headers of a request.

    Args:
        user_agent_marker: Substring the User-Agent must contain
        extension_marker: Exact value of the extension header
        required: When False the check is skipped (e.g. local development)
    """

    def __init__(
        self,
        user_agent_marker: str = CLIENT_USER_AGENT_MARKER,
        extension_marker: str = CLIENT_EXTENSION_MARKER,
        required: bool = True,
    ) -> None:
        self.user_agent_marker = user_agent_marker
        self.extension_marker = extension_marker
        self.required = required

    def verify(
        self,
        user_agent: str | None,
        extension: str | None,
        version: str | None = None,
    ) -> None:
        """
        Raises:
            InvalidClientError: If either marker is missing or wrong
        """
        if not self.required:
            return

        if not user_agent or self.user_agent_marker not in user_agent:
            logger.warning(
                "Client verification failed: Invalid User-Agent",
                extra={"user_agent": user_agent},
            )
            raise InvalidClientError("Invalid client")

        if extension != self.extension_marker:
            logger.warning(
                "Client verification failed: Missing or invalid extension header",
                extra={"extension_header": extension},
            )
            raise InvalidClientError("Invalid client extension")

        logger.debug(f"Client verified (extension version: {version or 'unknown'})")

    def verify_headers(self, headers: Mapping[str, str]) -> None:
        """Verify using a case-insensitive (or lower-case keyed) header mapping."""
        self.verify(
            headers.get("user-agent"),
            headers.get(HEADER_CLIENT_EXTENSION.lower()),
            headers.get(HEADER_CLIENT_VERSION.lower()),
        )
