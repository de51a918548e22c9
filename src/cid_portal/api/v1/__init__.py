# src/cid_portal/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import system_router
from .router import api_router

__all__ = ["api_router", "system_router"]
