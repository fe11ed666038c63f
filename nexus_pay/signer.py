"""
Signing boundary for both ledgers.

Turns an unsigned envelope or token transaction into a signed blob ready
for submission. Key material stays inside PrivateKey; only public keys
and signatures leave this module.

Legacy ledger:
    tx hash   = SHA-256(SHA-256(network passphrase) || canonical body)
    signature = Ed25519(hash)
    The hash doubles as the transaction ID (32 bytes).

Token ledger:
    signature = Ed25519(canonical message)
    One signature slot per required signer, fee payer first. When the fee
    payer is the service subsidizer it signs server-side and its slot is
    left zeroed. The first signature is the transaction ID (64 bytes).

Blob format:
    Canonical JSON of {"envelope"|"transaction": ..., "signatures": [...]}.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from nexus_pay.canonical_json import b64, canonical_json_bytes, unb64
from nexus_pay.integrity import sha256
from nexus_pay.keys import SIGNATURE_SIZE, PrivateKey, PublicKey
from nexus_pay.tx import LegacyEnvelope, TokenTransaction

EMPTY_SIGNATURE = bytes(SIGNATURE_SIZE)


# =========================================================================
# Legacy
# =========================================================================


def legacy_tx_hash(envelope: LegacyEnvelope, passphrase: str) -> bytes:
    """Network-bound hash of a legacy envelope."""
    network_id = sha256(passphrase.encode("utf-8"))
    return sha256(network_id + envelope.body_bytes())


@dataclass(frozen=True)
class DecoratedSignature:
    public_key: PublicKey
    signature: bytes

    def to_dict(self) -> dict[str, str]:
        return {"public_key": self.public_key.to_string(), "signature": b64(self.signature)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecoratedSignature:
        return cls(PublicKey.from_string(data["public_key"]), unb64(data["signature"]))


@dataclass(frozen=True)
class SignedLegacyEnvelope:
    envelope: LegacyEnvelope
    signatures: tuple[DecoratedSignature, ...]
    tx_hash: bytes

    @property
    def signers(self) -> tuple[PublicKey, ...]:
        return tuple(s.public_key for s in self.signatures)

    def blob(self) -> bytes:
        return canonical_json_bytes(
            {
                "envelope": self.envelope.to_dict(),
                "signatures": [s.to_dict() for s in self.signatures],
            }
        )

    def add_signature(self, key: PrivateKey) -> SignedLegacyEnvelope:
        """Return a copy with one more signature over the same hash."""
        sig = DecoratedSignature(key.public(), key.sign(self.tx_hash))
        return SignedLegacyEnvelope(self.envelope, self.signatures + (sig,), self.tx_hash)

    @classmethod
    def from_blob(cls, blob: bytes, passphrase: str) -> SignedLegacyEnvelope:
        """Parse a blob; the hash is recomputed for ``passphrase``.

        Raises:
            ValueError: If the blob is not a signed legacy envelope.
        """
        try:
            data = json.loads(blob)
            envelope = LegacyEnvelope.from_dict(data["envelope"])
            sigs = tuple(DecoratedSignature.from_dict(s) for s in data.get("signatures", []))
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed legacy envelope: {e}") from e
        return cls(envelope, sigs, legacy_tx_hash(envelope, passphrase))


def sign_legacy_envelope(
    envelope: LegacyEnvelope,
    passphrase: str,
    signers: tuple[PrivateKey, ...],
) -> SignedLegacyEnvelope:
    """Sign ``envelope`` with every key in ``signers``, in order."""
    tx_hash = legacy_tx_hash(envelope, passphrase)
    sigs = tuple(DecoratedSignature(k.public(), k.sign(tx_hash)) for k in signers)
    return SignedLegacyEnvelope(envelope, sigs, tx_hash)


# =========================================================================
# Token
# =========================================================================


@dataclass(frozen=True)
class SignedTokenTransaction:
    transaction: TokenTransaction
    signatures: tuple[bytes, ...]

    @property
    def tx_id(self) -> bytes:
        return self.signatures[0] if self.signatures else EMPTY_SIGNATURE

    def blob(self) -> bytes:
        return canonical_json_bytes(
            {
                "transaction": self.transaction.to_dict(),
                "signatures": [b64(s) for s in self.signatures],
            }
        )

    @classmethod
    def from_blob(cls, blob: bytes) -> SignedTokenTransaction:
        """Parse a blob.

        Raises:
            ValueError: If the blob is not a signed token transaction.
        """
        try:
            data = json.loads(blob)
            tx = TokenTransaction.from_dict(data["transaction"])
            sigs = tuple(unb64(s) for s in data.get("signatures", []))
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed token transaction: {e}") from e
        return cls(tx, sigs)


def sign_token_transaction(
    tx: TokenTransaction,
    signers: tuple[PrivateKey, ...],
) -> SignedTokenTransaction:
    """Sign ``tx``; the fee payer's slot is always first.

    If the fee payer is not among ``signers`` its slot is left zeroed for
    the service to fill in.
    """
    message = tx.message_bytes()
    by_key = {k.public(): k for k in signers}

    slots: list[bytes] = []
    payer = by_key.pop(tx.fee_payer, None)
    slots.append(payer.sign(message) if payer is not None else EMPTY_SIGNATURE)
    for key in signers:
        if key.public() in by_key:
            slots.append(key.sign(message))
            del by_key[key.public()]
    return SignedTokenTransaction(tx, tuple(slots))
