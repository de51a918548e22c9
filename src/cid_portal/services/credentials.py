"""Credential transport decoding.

Clients encrypt ``{"password", "nonce", "timestamp"}`` (timestamp in epoch
milliseconds) with the server's RSA public key using OAEP/SHA-256 and send
the base64 ciphertext. The server rejects stale envelopes and envelopes whose
nonce has been seen within the freshness window.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from threading import Lock
from typing import Final

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from cid_portal.core.errors import (
    DecryptionError,
    ExpiredCredentialError,
    ReplayError,
    TransientSystemError,
)
from cid_portal.core.settings import Settings
from cid_portal.services.audit import AuditSink, RequestContext, Severity, Status
from cid_portal.services.store import KeyValueStore
from cid_portal.utils.hash import blake3_hexdigest

logger = logging.getLogger(__name__)

KEY_SIZE: Final[int] = 2048
PRIVATE_KEY_FILE: Final[str] = "password-decrypt-key.pem"
PUBLIC_KEY_FILE: Final[str] = "password-encrypt-key.pem"
# tolerated lead of a client clock over the server clock
CLOCK_SKEW_SECONDS: Final[int] = 30

OAEP_PADDING = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class CredentialTransportDecoder:
    """Decrypt password envelopes and enforce nonce freshness."""

    def __init__(
        self,
        config: Settings,
        nonces: KeyValueStore,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._nonces = nonces
        self._audit = audit
        self._clock = clock
        self._keys_dir = Path(config.keys_dir)
        self._private_key: rsa.RSAPrivateKey | None = None
        self._public_pem: str | None = None
        self._key_lock = Lock()

    @property
    def enabled(self) -> bool:
        return self._config.enable_password_encryption

    def initialize(self) -> None:
        """Load or create the key pair at startup.

        Failures are logged rather than raised; they surface as
        :class:`TransientSystemError` on first use instead.
        """
        try:
            self._ensure_keys()
        except TransientSystemError:
            logger.error("Password encryption keys unavailable; encrypted logins will fail")
        else:
            logger.info("Password encryption initialised")

    def _ensure_keys(self) -> rsa.RSAPrivateKey:
        with self._key_lock:
            if self._private_key is not None:
                return self._private_key
            private_path = self._keys_dir / PRIVATE_KEY_FILE
            public_path = self._keys_dir / PUBLIC_KEY_FILE
            try:
                if private_path.exists() and public_path.exists():
                    key = serialization.load_pem_private_key(private_path.read_bytes(), password=None)
                    if not isinstance(key, rsa.RSAPrivateKey):
                        raise TransientSystemError("Stored password key is not an RSA key")
                    self._private_key = key
                    self._public_pem = public_path.read_text(encoding="utf-8")
                else:
                    self._private_key, self._public_pem = self._generate(private_path, public_path)
            except (OSError, ValueError) as exc:
                logger.exception("Failed to load password encryption keys")
                raise TransientSystemError("Encryption keys unavailable") from exc
            return self._private_key

    def _generate(self, private_path: Path, public_path: Path) -> tuple[rsa.RSAPrivateKey, str]:
        logger.info("Generating RSA key pair for password encryption in %s", self._keys_dir)
        self._keys_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(self._keys_dir, 0o700)
        key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        private_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        self._write(private_path, private_pem, 0o600)
        self._write(public_path, public_pem, 0o644)
        return key, public_pem.decode("ascii")

    @staticmethod
    def _write(path: Path, data: bytes, mode: int) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(path, mode)

    def public_key_pem(self) -> str:
        self._ensure_keys()
        assert self._public_pem is not None
        return self._public_pem

    def decrypt(self, envelope: str, context: RequestContext | None = None) -> str:
        """Recover the plaintext password from an encrypted envelope.

        Args:
            envelope: Base64 RSA-OAEP ciphertext.
            context: Requester attributes for the audit trail.

        Returns:
            The plaintext password.

        Raises:
            DecryptionError: Malformed ciphertext or payload.
            ExpiredCredentialError: Timestamp outside the freshness window.
            ReplayError: Nonce already seen within the window.
        """
        key = self._ensure_keys()
        try:
            ciphertext = base64.b64decode(envelope, validate=True)
            plaintext = key.decrypt(ciphertext, OAEP_PADDING).decode("utf-8")
        except (binascii.Error, ValueError, UnicodeDecodeError) as err:
            self._audit.record(
                "CREDENTIAL_DECRYPTION_FAILED", Severity.MEDIUM, Status.FAILURE, None, context
            )
            raise DecryptionError() from err

        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("Accepted legacy credential envelope without nonce")
            self._audit.record(
                "LEGACY_CREDENTIAL_FORMAT",
                Severity.LOW,
                Status.WARNING,
                {"message": "Encrypted password submitted without nonce"},
                context,
            )
            return plaintext

        password = payload.get("password")
        nonce = payload.get("nonce")
        timestamp = payload.get("timestamp")
        if (
            not isinstance(password, str)
            or not isinstance(nonce, str)
            or not nonce
            or isinstance(timestamp, bool)
            or not isinstance(timestamp, (int, float))
        ):
            raise DecryptionError("Malformed credential envelope")

        now = self._clock()
        issued_at = timestamp / 1000.0
        age = now - issued_at
        max_age = self._config.credential_max_age_seconds
        if age > max_age or age < -CLOCK_SKEW_SECONDS:
            self._audit.record(
                "CREDENTIAL_EXPIRED",
                Severity.MEDIUM,
                Status.FAILURE,
                {"ageSeconds": round(age, 3)},
                context,
            )
            raise ExpiredCredentialError()

        fingerprint = blake3_hexdigest(nonce.encode("utf-8"))
        # the nonce must outlive the envelope's own freshness window
        ttl = max(max_age, issued_at + max_age - now)
        if not self._nonces.add(fingerprint, {"seen_at": now}, ttl_seconds=ttl):
            self._audit.record(
                "CREDENTIAL_REPLAY_DETECTED",
                Severity.CRITICAL,
                Status.FAILURE,
                {"nonceFingerprint": fingerprint[:16]},
                context,
            )
            raise ReplayError("Credential envelope has already been used", code="CREDENTIAL_REPLAY")
        return password

    def sweep(self) -> int:
        return self._nonces.sweep()


__all__ = ["CLOCK_SKEW_SECONDS", "CredentialTransportDecoder", "OAEP_PADDING"]
