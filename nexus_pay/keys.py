"""
Ed25519 key material for both ledgers.

Both the legacy ledger and the token ledger identify accounts by raw
32-byte Ed25519 public keys. Private keys are held as 32-byte seeds and
turned into ``cryptography`` key objects only at signing time.

The canonical string encoding of a public key is lowercase hex. It is
used for cache keys, log lines and the JSON-RPC wire format.

Token accounts:
    On the token ledger an owner's default token account is a separate
    keypair derived deterministically from the owner's seed:
    ``token_seed = sha256(owner_seed)``. The same owner always maps to the
    same token account.
"""

from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

KEY_SIZE = 32
SIGNATURE_SIZE = 64


class PublicKey:
    """A 32-byte Ed25519 public key. Immutable and hashable."""

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes) -> None:
        if len(raw) != KEY_SIZE:
            raise ValueError(f"public key must be {KEY_SIZE} bytes, got {len(raw)}")
        self._raw = bytes(raw)

    @classmethod
    def from_string(cls, value: str) -> PublicKey:
        """Parse the hex encoding produced by ``to_string()``."""
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError(f"invalid public key encoding: {value!r}") from exc
        return cls(raw)

    @property
    def raw(self) -> bytes:
        return self._raw

    def to_string(self) -> str:
        """Canonical string encoding (lowercase hex)."""
        return self._raw.hex()

    def verify(self, signature: bytes, message: bytes) -> bool:
        """Return True if ``signature`` is a valid signature of ``message``."""
        try:
            Ed25519PublicKey.from_public_bytes(self._raw).verify(signature, message)
        except InvalidSignature:
            return False
        return True

    def __bytes__(self) -> bytes:
        return self._raw

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        return f"PublicKey({self.to_string()})"


class PrivateKey:
    """A 32-byte Ed25519 seed. Never rendered in repr or logs."""

    __slots__ = ("_seed", "_public")

    def __init__(self, seed: bytes) -> None:
        if len(seed) != KEY_SIZE:
            raise ValueError(f"private key seed must be {KEY_SIZE} bytes")
        self._seed = bytes(seed)
        pub = Ed25519PrivateKey.from_private_bytes(self._seed).public_key()
        self._public = PublicKey(pub.public_bytes(Encoding.Raw, PublicFormat.Raw))

    @classmethod
    def generate(cls) -> PrivateKey:
        return cls(os.urandom(KEY_SIZE))

    @property
    def seed(self) -> bytes:
        return self._seed

    def public(self) -> PublicKey:
        return self._public

    def sign(self, message: bytes) -> bytes:
        """Ed25519 signature over ``message`` (64 bytes)."""
        return Ed25519PrivateKey.from_private_bytes(self._seed).sign(message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self._seed == other._seed

    def __hash__(self) -> int:
        return hash(self._seed)

    def __repr__(self) -> str:
        return f"PrivateKey(public={self._public.to_string()})"


def derive_token_account(owner: PrivateKey) -> PrivateKey:
    """Derive the owner's default token-account keypair."""
    return PrivateKey(hashlib.sha256(owner.seed).digest())
