"""
Authentication, client identity and rate limiting.
"""

from .client_identity import ClientIdentityVerifier
from .credentials import (
    ApiKeyEntry,
    AuthContext,
    CredentialStore,
    extract_credential,
    hash_api_key,
)
from .rate_limiter import RateDecision, RateGate, RateOutcome, RateState

__all__ = [
    "AuthContext",
    "ApiKeyEntry",
    "CredentialStore",
    "extract_credential",
    "hash_api_key",
    "ClientIdentityVerifier",
    "RateGate",
    "RateDecision",
    "RateOutcome",
    "RateState",
]
