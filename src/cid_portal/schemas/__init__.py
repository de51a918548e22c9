# src/cid_portal/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire.
"""

from .admin import LogCleanupRequest, LogSearchRequest, UnlockAccountRequest, UploadResponse
from .auth import (
    ExtendSessionResponse,
    LoginRequest,
    LogoutResponse,
    PublicKeyResponse,
    RegisterRequest,
    SessionStatus,
    UserSummary,
)
from .captcha import (
    CaptchaRefreshRequest,
    CaptchaResponse,
    CaptchaVerifyRequest,
    CaptchaVerifyResponse,
)

__all__ = [
    "CaptchaRefreshRequest", "CaptchaResponse", "CaptchaVerifyRequest", "CaptchaVerifyResponse",
    "ExtendSessionResponse", "LoginRequest", "LogoutResponse", "PublicKeyResponse",
    "RegisterRequest", "SessionStatus", "UserSummary",
    "LogCleanupRequest", "LogSearchRequest", "UnlockAccountRequest", "UploadResponse",
]
