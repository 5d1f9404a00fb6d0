"""
MDB_GATEWAY - MongoDB Gateway

Authenticated HTTP gateway that lets a constrained client run MongoDB
operations through pooled, rate limited and validated connections.
"""

# Authentication
from .auth import ClientIdentityVerifier, CredentialStore, RateGate
# Codec
from .codec import decode, encode
# Configuration
from .config import GatewaySettings
# Database layer
from .database import CollectionOperations, ConnectionPool, OperatorValidator, RetryPolicy
# Gateway
from .gateway import GatewayRequest, RequestGateway, ResponseEnvelope, create_app

__version__ = "0.1.0"

__all__ = [
    # Gateway
    "RequestGateway",
    "GatewayRequest",
    "ResponseEnvelope",
    "create_app",
    "GatewaySettings",
    # Codec
    "encode",
    "decode",
    # Database
    "ConnectionPool",
    "CollectionOperations",
    "OperatorValidator",
    "RetryPolicy",
    # Auth
    "CredentialStore",
    "ClientIdentityVerifier",
    "RateGate",
]
