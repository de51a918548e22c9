# src/cid_portal/models/__init__.py
"""SQLAlchemy models for the CID portal."""

from .user import ADMIN_ROLES, User

__all__ = ["ADMIN_ROLES", "User"]
