# src/cid_portal/utils/credential_client.py
"""Client-side helpers for building encrypted credential envelopes.

Mirrors what the browser does before submitting a login form; used by
scripts and the test-suite.
"""

from __future__ import annotations

import base64
import json
import secrets
import time

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from cid_portal.services.credentials import OAEP_PADDING


def encrypt_password(
    public_key_pem: str,
    password: str,
    *,
    nonce: str | None = None,
    timestamp_ms: int | None = None,
    legacy: bool = False,
) -> str:
    """Return the base64 envelope for ``password``.

    Args:
        public_key_pem: PEM returned by ``GET /api/auth/public-key``.
        password: Plaintext password.
        nonce: Single-use value; random when omitted.
        timestamp_ms: Epoch milliseconds; now when omitted.
        legacy: Encrypt the bare password without nonce or timestamp.
    """
    public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError("Public key is not an RSA key")
    if legacy:
        plaintext = password
    else:
        plaintext = json.dumps(
            {
                "password": password,
                "nonce": nonce or secrets.token_hex(16),
                "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            }
        )
    ciphertext = public_key.encrypt(plaintext.encode("utf-8"), OAEP_PADDING)
    return base64.b64encode(ciphertext).decode("ascii")
