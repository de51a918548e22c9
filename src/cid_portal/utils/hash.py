# src/cid_portal/utils/hash.py
"""BLAKE3 fingerprint helpers for nonces and uploaded content."""

from __future__ import annotations

from blake3 import blake3


def blake3_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return blake3(data).digest()


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data."""
    return blake3(data).hexdigest()
