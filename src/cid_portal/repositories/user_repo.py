"""Data access helpers for working with portal users."""
from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cid_portal.models.user import User

__all__ = ["UserRepository"]


class UserRepository:
    """Thin wrapper around database access for user accounts."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_username(self, username: str) -> User | None:
        """Return the user with ``username``, compared case-insensitively."""
        result = self.session.execute(
            select(User).where(func.lower(User.username) == username.strip().lower())
        )
        return result.scalars().first()

    def get_by_id(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def create(
        self,
        *,
        username: str,
        password_hash: str,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        role: str = "user",
    ) -> User:
        """Insert a new user and return the persisted ORM instance.

        Args:
            username: Sanitised login name.
            password_hash: Stored form produced by the password verifier.
            email: Contact address.
            first_name: Given name.
            last_name: Family name.
            role: ``user``, ``editor``, ``admin`` or ``super_admin``.
        """
        user = User(
            username=username,
            password_hash=password_hash,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=True,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def update_password_hash(self, user: User, password_hash: str) -> None:
        user.password_hash = password_hash
        self.session.commit()
