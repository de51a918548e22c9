# src/cid_portal/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .auth import router as auth_router
from .captcha import router as captcha_router
from .system import router as system_router
from .uploads import router as uploads_router

__all__ = [
    "admin_router",
    "auth_router",
    "captcha_router",
    "system_router",
    "uploads_router",
]
