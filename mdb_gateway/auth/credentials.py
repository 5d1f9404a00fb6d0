"""
API key credentials for MDB_GATEWAY.

Keys are stored only as bcrypt hashes. Each secret is first reduced with
SHA-256 so secrets longer than bcrypt's 72-byte input limit still compare
on their full value.

The store is read on every request and written only when keys are added,
provisioned or revoked. Readers use an immutable snapshot; writers build a
new snapshot under a lock and swap it in.

Usage:
    store = CredentialStore()
    secret = store.provision("plugin", ["read", "write"], "Game server plugin")
    context = store.authenticate(secret)
    store.authorize(context, ["write"])
"""

import hashlib
import logging
import secrets
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any

import bcrypt

from ..constants import (
    API_KEY_BYTES,
    DEFAULT_BCRYPT_ROUNDS,
    HEADER_API_KEY,
    HEADER_AUTHORIZATION,
    HEADER_CLIENT_API_KEY,
    PERMISSION_ADMIN,
    SUPPORTED_PERMISSIONS,
)
from ..exceptions import (
    ConfigurationError,
    InsufficientPermissionError,
    InvalidCredentialError,
    MissingCredentialError,
)
from ..observability import fingerprint_secret

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to one request."""

    key_name: str
    permissions: frozenset[str]
    authenticated: bool = True

    @property
    def is_admin(self) -> bool:
        return PERMISSION_ADMIN in self.permissions

    def has_any(self, required: Iterable[str]) -> bool:
        """True if any required scope is held, or the identity is admin."""
        return self.is_admin or any(scope in self.permissions for scope in required)


def _prehash(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("ascii")


def hash_api_key(secret: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> bytes:
    """Hash an API key secret for storage."""
    return bcrypt.hashpw(_prehash(secret), bcrypt.gensalt(rounds=rounds))


@dataclass(frozen=True)
class ApiKeyEntry:
    """A named API key. Only the hash of the secret is kept."""

    name: str
    key_hash: bytes = field(repr=False)
    permissions: frozenset[str]
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def matches(self, secret: str) -> bool:
        """Hash-then-compare; bcrypt's comparison is constant time."""
        return bcrypt.checkpw(_prehash(secret), self.key_hash)

    def to_dict(self) -> dict[str, Any]:
        """Public view of the entry (never includes the hash)."""
        return {
            "name": self.name,
            "permissions": sorted(self.permissions),
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def _normalize_permissions(permissions: Iterable[str]) -> frozenset[str]:
    scopes = frozenset(permissions)
    unknown = scopes - set(SUPPORTED_PERMISSIONS)
    if unknown:
        raise ConfigurationError(
            f"Unknown permissions: {sorted(unknown)}",
            config_key="permissions",
            config_value=sorted(unknown),
        )
    return scopes


class CredentialStore:
    """
    In-memory store of named API keys.

    Args:
        bcrypt_rounds: Work factor for new hashes
        clock: Returns the current aware UTC time (expiry checks)
    """

    def __init__(
        self,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.bcrypt_rounds = bcrypt_rounds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Mapping[str, ApiKeyEntry] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _store(self, entry: ApiKeyEntry) -> None:
        with self._write_lock:
            entries = dict(self._entries)
            entries[entry.name] = entry
            self._entries = MappingProxyType(entries)

    def add_key(
        self,
        name: str,
        secret: str,
        permissions: Iterable[str],
        description: str = "",
        expires_at: datetime | None = None,
    ) -> ApiKeyEntry:
        """
        Register a known secret under ``name`` (replacing any existing entry).

        Raises:
            ConfigurationError: If the name or secret is empty or a permission is unknown
        """
        if not name:
            raise ConfigurationError("API key name is required", config_key="name")
        if not secret:
            raise ConfigurationError("API key secret is required", config_key=name)
        entry = ApiKeyEntry(
            name=name,
            key_hash=hash_api_key(secret, self.bcrypt_rounds),
            permissions=_normalize_permissions(permissions),
            description=description,
            created_at=self._clock(),
            expires_at=expires_at,
        )
        self._store(entry)
        logger.info(f"API key registered: {name} (permissions: {sorted(entry.permissions)})")
        return entry

    def provision(
        self,
        name: str,
        permissions: Iterable[str],
        description: str = "",
        expires_in_days: int | None = None,
    ) -> str:
        """
        Generate a new random API key and store its hash.

        Returns:
            The secret; it is not retrievable afterwards
        """
        secret = secrets.token_hex(API_KEY_BYTES)
        expires_at = None
        if expires_in_days is not None:
            expires_at = self._clock() + timedelta(days=expires_in_days)
        self.add_key(name, secret, permissions, description, expires_at)
        return secret

    def revoke(self, name: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        with self._write_lock:
            if name not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[name]
            self._entries = MappingProxyType(entries)
        logger.info(f"API key revoked: {name}")
        return True

    def list_keys(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries.values()]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def authenticate(self, credential: str | None) -> AuthContext:
        """
        Resolve a presented secret to an identity.

        bcrypt is CPU bound; async callers should run this in a thread.

        Raises:
            MissingCredentialError: If no credential was presented
            InvalidCredentialError: If no unexpired entry matches
        """
        if not credential:
            raise MissingCredentialError("API key required")

        now = self._clock()
        for entry in self._entries.values():
            if entry.is_expired(now):
                continue
            if entry.matches(credential):
                return AuthContext(key_name=entry.name, permissions=entry.permissions)

        logger.warning(
            "API key authentication failed: Invalid API key",
            extra={"key_fingerprint": fingerprint_secret(credential)},
        )
        raise InvalidCredentialError("Invalid API key")

    @staticmethod
    def authorize(context: AuthContext, required: Iterable[str]) -> None:
        """
        Check that ``context`` holds one of ``required`` (or admin).

        Raises:
            InsufficientPermissionError: If none of the scopes is held
        """
        required = list(required)
        if not required or context.has_any(required):
            return
        raise InsufficientPermissionError(
            "Insufficient permissions",
            required=required,
            granted=sorted(context.permissions),
        )


def extract_credential(headers: Mapping[str, str]) -> str | None:
    """
    Pull the API key from request headers.

    Checked in order: ``Authorization: Bearer``, ``X-API-Key``,
    ``X-SourceMod-API-Key``. ``headers`` must be case-insensitive or
    keyed by lower-case names.
    """
    authorization = headers.get(HEADER_AUTHORIZATION.lower())
    if authorization and authorization.startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):].strip()
        if token:
            return token

    for header in (HEADER_API_KEY, HEADER_CLIENT_API_KEY):
        value = headers.get(header.lower())
        if value:
            return value.strip()
    return None
