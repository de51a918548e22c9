"""Router wiring for the ``/api`` surface.

Composes the sub-routers that define their own endpoints; contains no
endpoint definitions of its own.
"""
from __future__ import annotations

from typing import Final

from fastapi import APIRouter

from .endpoints import admin_router, auth_router, captcha_router, uploads_router

api_router: Final[APIRouter] = APIRouter(prefix="/api")
api_router.include_router(auth_router)
api_router.include_router(captcha_router)
api_router.include_router(uploads_router)
api_router.include_router(admin_router)

__all__ = ["api_router"]
