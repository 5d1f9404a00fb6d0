"""
Configuration management for MDB_GATEWAY.

Settings are read from environment variables prefixed with ``MDB_GATEWAY_``
(or a ``.env`` file) using pydantic-settings. Every component can still be
constructed with direct parameters; the settings object only supplies them.

Example:
    settings = GatewaySettings()
    settings.validate_settings()
    app = create_app(settings)
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    CLIENT_EXTENSION_MARKER,
    CLIENT_USER_AGENT_MARKER,
    DANGEROUS_OPERATORS,
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_CONNECTION_TTL_SECONDS,
    DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_MAX_PAYLOAD_BYTES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RATE_MAX_REQUESTS,
    DEFAULT_RATE_WINDOW_SECONDS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_SLOW_DOWN_AFTER,
    DEFAULT_SLOW_DOWN_DELAY_MS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    MAX_OBJECT_KEYS,
    MAX_QUERY_DEPTH,
    PERMISSION_ADMIN,
    PERMISSION_READ,
    PERMISSION_WRITE,
    SUPPORTED_PERMISSIONS,
)
from .exceptions import ConfigurationError


class GatewaySettings(BaseSettings):
    """
    Gateway configuration with environment variable support.

    Usage:
        # MDB_GATEWAY_MAX_CONNECTIONS=20 MDB_GATEWAY_API_KEY=... uvicorn ...
        settings = GatewaySettings()

        # Or directly
        settings = GatewaySettings(max_connections=5, rate_max_requests=50)
    """

    # Connection pool
    max_connections: int = Field(
        DEFAULT_MAX_CONNECTIONS, ge=1, description="Maximum pooled connections"
    )
    connection_ttl_seconds: float = Field(
        DEFAULT_CONNECTION_TTL_SECONDS, gt=0, description="Idle TTL of a pooled connection"
    )
    sweep_interval_seconds: float = Field(
        DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0, description="Eviction sweep interval"
    )
    handshake_timeout_seconds: float = Field(
        DEFAULT_HANDSHAKE_TIMEOUT_SECONDS, gt=0, description="Connection handshake timeout"
    )

    # Proxied operations
    operation_timeout_seconds: float = Field(
        DEFAULT_OPERATION_TIMEOUT_SECONDS, gt=0, description="Timeout per proxied operation"
    )
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0, description="Transient failure retries")
    retry_base_delay_seconds: float = Field(DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0)
    retry_max_delay_seconds: float = Field(DEFAULT_RETRY_MAX_DELAY_SECONDS, ge=0)

    # Rate limiting
    rate_window_seconds: float = Field(DEFAULT_RATE_WINDOW_SECONDS, gt=0)
    rate_max_requests: int = Field(DEFAULT_RATE_MAX_REQUESTS, ge=1)
    slow_down_after: int = Field(DEFAULT_SLOW_DOWN_AFTER, ge=0)
    slow_down_delay_ms: int = Field(DEFAULT_SLOW_DOWN_DELAY_MS, ge=0)

    # Request validation
    max_payload_bytes: int = Field(DEFAULT_MAX_PAYLOAD_BYTES, ge=1)
    max_query_depth: int = Field(MAX_QUERY_DEPTH, ge=1)
    max_object_keys: int = Field(MAX_OBJECT_KEYS, ge=1)
    extra_allowed_operators: list[str] = Field(default_factory=list)

    # Client identity
    require_client_identity: bool = True
    client_user_agent_marker: str = CLIENT_USER_AGENT_MARKER
    client_extension_marker: str = CLIENT_EXTENSION_MARKER

    # Bootstrap API key (hashed on startup, never stored in clear)
    api_key: Optional[str] = None
    api_key_name: str = "default"
    api_key_permissions: list[str] = Field(
        default_factory=lambda: [PERMISSION_READ, PERMISSION_WRITE, PERMISSION_ADMIN]
    )
    bcrypt_rounds: int = Field(DEFAULT_BCRYPT_ROUNDS, ge=4, le=31)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="MDB_GATEWAY_", env_file=".env", extra="ignore", case_sensitive=False
    )

    def validate_settings(self) -> None:
        """
        Validate cross-field configuration values.

        Raises:
            ConfigurationError: If the configuration is inconsistent
        """
        if self.slow_down_after > self.rate_max_requests:
            raise ConfigurationError(
                f"slow_down_after ({self.slow_down_after}) cannot be greater than "
                f"rate_max_requests ({self.rate_max_requests})",
                config_key="slow_down_after",
                config_value=self.slow_down_after,
            )

        if self.sweep_interval_seconds > self.connection_ttl_seconds:
            raise ConfigurationError(
                "sweep_interval_seconds cannot be greater than connection_ttl_seconds",
                config_key="sweep_interval_seconds",
                config_value=self.sweep_interval_seconds,
            )

        for operator in self.extra_allowed_operators:
            if not operator.startswith("$"):
                raise ConfigurationError(
                    f"Allowed operator overrides must start with '$', got {operator!r}",
                    config_key="extra_allowed_operators",
                    config_value=operator,
                )
            if operator in DANGEROUS_OPERATORS:
                raise ConfigurationError(
                    f"Operator {operator} can never be allowed",
                    config_key="extra_allowed_operators",
                    config_value=operator,
                )

        unknown = set(self.api_key_permissions) - set(SUPPORTED_PERMISSIONS)
        if unknown:
            raise ConfigurationError(
                f"Unknown permissions: {sorted(unknown)}",
                config_key="api_key_permissions",
                config_value=sorted(unknown),
            )
