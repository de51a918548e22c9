"""Password hashing and verification.

New hashes use passlib's ``$pbkdf2-sha512$<rounds>$<salt>$<digest>`` form.
Two legacy formats are still accepted on verification: bcrypt (``$2a$``/
``$2b$``/``$2y$`` prefixes, flagged as deprecated so they are rehashed on the
next login) and the old scrypt ``<digest hex>.<salt>`` form.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from passlib.context import CryptContext

logger = logging.getLogger(__name__)

CANONICAL_ALGORITHM = "pbkdf2_sha512"
MIN_ITERATIONS = 100_000
SALT_BYTES = 32
SCRYPT_KEY_BYTES = 64


class PasswordVerifier:
    """Hash new passwords and verify supplied ones against stored forms."""

    def __init__(self, iterations: int = MIN_ITERATIONS) -> None:
        if iterations < MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 iteration count must be at least {MIN_ITERATIONS}")
        self._context = CryptContext(
            schemes=[CANONICAL_ALGORITHM, "bcrypt"],
            deprecated=["bcrypt"],
            pbkdf2_sha512__rounds=iterations,
            pbkdf2_sha512__min_rounds=iterations,
            pbkdf2_sha512__salt_size=SALT_BYTES,
        )

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def compare(self, supplied: str, stored: str) -> bool:
        """Return True if ``supplied`` matches the stored hash.

        Args:
            supplied: Plaintext password from the client.
            stored: Stored hash in any recognised format.

        Returns:
            Whether the password matches. Unrecognised or malformed stored
            forms never match.
        """
        if not stored:
            return False
        if self._context.identify(stored) is not None:
            try:
                return self._context.verify(supplied, stored)
            except (ValueError, TypeError):
                logger.warning("Malformed password hash")
                return False
        if "." in stored:
            return self._compare_scrypt(supplied, stored)
        logger.warning("Unrecognised password hash format")
        return False

    def needs_rehash(self, stored: str) -> bool:
        if self._context.identify(stored) is None:
            return True
        try:
            return self._context.needs_update(stored)
        except ValueError:
            return True

    def _compare_scrypt(self, supplied: str, stored: str) -> bool:
        digest_hex, _, salt = stored.partition(".")
        try:
            expected = bytes.fromhex(digest_hex)
        except ValueError:
            logger.warning("Malformed legacy password hash")
            return False
        candidate = hashlib.scrypt(
            supplied.encode("utf-8"),
            salt=salt.encode("utf-8"),
            n=16384,
            r=8,
            p=1,
            dklen=SCRYPT_KEY_BYTES,
        )
        return hmac.compare_digest(candidate, expected)


__all__ = ["CANONICAL_ALGORITHM", "MIN_ITERATIONS", "PasswordVerifier"]
