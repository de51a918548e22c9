# src/cid_portal/core/errors.py
"""Error taxonomy for security decisions.

Every rejection carries an HTTP status, a stable machine-readable ``code`` and
a human message. The FastAPI exception handlers in :mod:`cid_portal.main`
render them as ``{"message": ..., "code": ...}``.
"""

from __future__ import annotations

from typing import Any


class SecurityError(Exception):
    """Base class for all rejections raised by the security core."""

    status_code: int = 400
    code: str = "SECURITY_ERROR"
    message: str = "Request rejected"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(SecurityError):
    status_code = 400
    code = "VALIDATION_FAILED"
    message = "Invalid request"


class DecryptionError(ValidationError):
    code = "CREDENTIAL_DECRYPTION_FAILED"
    message = "Failed to decrypt credentials"


class ExpiredCredentialError(ValidationError):
    code = "CREDENTIAL_EXPIRED"
    message = "Encrypted credentials have expired"


class AuthenticationError(SecurityError):
    status_code = 401
    code = "AUTHENTICATION_FAILED"
    message = "Authentication required"


class SessionExpiredError(AuthenticationError):
    code = "SESSION_TIMEOUT"
    message = "Session expired due to inactivity"


class AuthorizationError(SecurityError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Admin access required"


class RateLimitError(SecurityError):
    """Raised when a caller exceeds a CAPTCHA, upload or lockout threshold."""

    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.headers.setdefault("Retry-After", str(max(1, retry_after)))


class ReplayError(SecurityError):
    """Raised when a terminated session id or a used nonce is presented again."""

    status_code = 401
    code = "REPLAY_DETECTED"
    message = "Replay detected"


class SecurityPolicyError(SecurityError):
    status_code = 403
    code = "SECURITY_POLICY_VIOLATION"
    message = "Request blocked by security policy"


class TransientSystemError(SecurityError):
    """Raised for disk or key failures; the message never reaches production clients."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"


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
    "TransientSystemError",
    "ValidationError",
]
