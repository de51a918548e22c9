# src/cid_portal/db/__init__.py
"""Database configuration and utilities."""

from .session import Base, SessionLocal, create_tables, get_db

__all__ = ["Base", "SessionLocal", "create_tables", "get_db"]
