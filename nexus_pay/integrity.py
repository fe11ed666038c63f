"""
Digest utilities for invoice fingerprints and transaction hashes.
"""

import hashlib
from typing import Any

from nexus_pay.canonical_json import canonical_json_bytes

# Size of an invoice-list fingerprint (SHA-224).
FINGERPRINT_SIZE = 28


def sha224(data: bytes) -> bytes:
    """SHA-224 digest of bytes (28 bytes)."""
    return hashlib.sha224(data).digest()


def sha256(data: bytes) -> bytes:
    """SHA-256 digest of bytes (32 bytes)."""
    return hashlib.sha256(data).digest()


def content_fingerprint(obj: Any) -> bytes:
    """
    Compute the SHA-224 fingerprint of an object's canonical JSON form.

    Deterministic for any JSON-serializable object.
    """
    return sha224(canonical_json_bytes(obj))
