# mypy: ignore-errors
# tests/test_users.py
"""Unit tests for the user model, its repository and input sanitisation."""

import pytest

from cid_portal.core.sanitize import is_valid_email, password_policy_errors, sanitize_input
from cid_portal.models.user import User
from cid_portal.repositories.user_repo import UserRepository


def test_table_and_unique_username():
    """User rows live in ``users`` with a unique username column."""
    assert User.__tablename__ == "users"
    assert User.__table__.c.username.unique


def test_admin_roles():
    assert User(username="a", password_hash="x", role="admin").is_admin
    assert User(username="b", password_hash="x", role="super_admin").is_admin
    assert not User(username="c", password_hash="x", role="editor").is_admin


def test_repository_create_and_lookup(db_session):
    repo = UserRepository(db_session)

    user = repo.create(username="Officer", password_hash="hash", email="o@tspolice.gov.in")

    assert user.id is not None
    assert user.role == "user"
    assert user.is_active
    assert repo.get_by_username("  officer ").id == user.id
    assert repo.get_by_id(user.id).email == "o@tspolice.gov.in"
    assert repo.get_by_username("ghost") is None


def test_update_password_hash(db_session):
    repo = UserRepository(db_session)
    user = repo.create(username="officer", password_hash="old")

    repo.update_password_hash(user, "new")

    assert repo.get_by_id(user.id).password_hash == "new"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  officer  ", "officer"),
        ("<b>officer</b>", "bofficer/b"),
        ("javascript:alert(1)", "alert(1)"),
        ('x onclick="go()"', 'x "go()"'),
        (None, ""),
    ],
)
def test_sanitize_input(raw, expected):
    assert sanitize_input(raw) == expected


def test_password_policy():
    assert password_policy_errors("Str0ng!Passw0rd") == []
    assert len(password_policy_errors("weak")) == 4
    assert password_policy_errors("NoSpecial123") == [
        "Password must contain at least one special character"
    ]


@pytest.mark.parametrize(
    "email, valid",
    [
        ("officer@tspolice.gov.in", True),
        ("officer@localhost", False),
        ("no spaces@x.in", False),
        ("", False),
    ],
)
def test_email_format(email, valid):
    assert is_valid_email(email) is valid
