# src/cid_portal/core/sanitize.py
"""Input sanitisation and credential policy checks."""

from __future__ import annotations

import re
from typing import Final

_ANGLE_BRACKETS: Final = re.compile(r"[<>]")
_JS_SCHEME: Final = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER: Final = re.compile(r"on\w+=", re.IGNORECASE)

EMAIL_PATTERN: Final = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_MIN_LENGTH: Final[int] = 8
PASSWORD_SPECIAL_CHARS: Final[str] = '!@#$%^&*(),.?":{}|<>'


def sanitize_input(value: str | None) -> str:
    """Strip markup and script vectors from free-text input."""
    if not value:
        return ""
    cleaned = _ANGLE_BRACKETS.sub("", value)
    cleaned = _JS_SCHEME.sub("", cleaned)
    cleaned = _EVENT_HANDLER.sub("", cleaned)
    return cleaned.strip()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email or ""))


def password_policy_errors(password: str) -> list[str]:
    """Return every password-policy rule the candidate violates.

    Args:
        password: Candidate plaintext password.

    Returns:
        Human readable messages; an empty list means the password is acceptable.
    """
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not any(char in PASSWORD_SPECIAL_CHARS for char in password):
        errors.append("Password must contain at least one special character")
    return errors


__all__ = ["is_valid_email", "password_policy_errors", "sanitize_input"]
