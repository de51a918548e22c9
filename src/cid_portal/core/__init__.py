"""Core configuration, errors and request-inspection primitives."""

from .errors import (
    AuthenticationError,
    AuthorizationError,
    DecryptionError,
    ExpiredCredentialError,
    RateLimitError,
    ReplayError,
    SecurityError,
    SecurityPolicyError,
    SessionExpiredError,
    TransientSystemError,
    ValidationError,
)
from .settings import Settings, settings

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "DecryptionError",
    "ExpiredCredentialError",
    "RateLimitError",
    "ReplayError",
    "SecurityError",
    "SecurityPolicyError",
    "SessionExpiredError",
    "Settings",
    "TransientSystemError",
    "ValidationError",
    "settings",
]
