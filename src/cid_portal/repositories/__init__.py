"""Data access helpers."""

from .user_repo import UserRepository

__all__ = ["UserRepository"]
