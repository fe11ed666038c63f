"""
Canonical JSON serialization for deterministic hashing and signing.

Used for invoice-list fingerprints and for the transaction bodies that
get signed. Sorted keys, no whitespace, UTF-8. Bytes values are not
accepted here: callers base64-encode them first so the canonical form
never depends on a custom encoder.
"""

import base64
import json
from typing import Any


def canonical_json(obj: Any) -> str:
    """
    Serialize object to canonical JSON string.

    Rules:
    - Keys sorted alphabetically (recursive)
    - No whitespace
    - UTF-8 encoding (no ASCII escapes for non-ASCII chars)
    - NaN/Infinity rejected
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize to canonical JSON as UTF-8 bytes."""
    return canonical_json(obj).encode("utf-8")


def b64(data: bytes) -> str:
    """Standard base64 (with padding) as str."""
    return base64.b64encode(data).decode("ascii")


def unb64(data: str) -> bytes:
    """Decode standard base64, rejecting non-alphabet characters."""
    return base64.b64decode(data, validate=True)
