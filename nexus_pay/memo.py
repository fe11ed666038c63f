"""
Structured transaction memo and invoice fingerprints.

Binds off-chain invoice data to an on-chain transaction. The memo is a
fixed 32-byte value (256 bits), little-endian bit packed:

    bits   0..1    magic (always 1)
    bits   2..4    format version (0-7)
    bits   5..9    payment type (0-31)
    bits  10..25   app index (0-65535)
    bits  26..255  foreign key (230 bits)

The foreign key is the SHA-224 fingerprint (28 bytes) of the canonical
serialization of the transaction's InvoiceList, or 28 zero bytes when the
transaction carries no invoices. 28 bytes use 224 of the 230 available
bits; the remainder stays zero.

Memo selection (both ledgers):
    1. text memo set         → text memo, verbatim
    2. app index configured  → structured memo (version 1)
    3. otherwise             → no memo
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from nexus_pay.integrity import FINGERPRINT_SIZE, content_fingerprint
from nexus_pay.models import InvoiceList, PaymentType

# Size of an encoded memo in bytes.
MEMO_SIZE = 32

# Current memo format version.
MEMO_VERSION = 1

# Value of the low two bits of every structured memo.
MAGIC = 0x1

# Maximum foreign-key length accepted by the encoder.
MAX_FOREIGN_KEY_SIZE = 29

MAX_APP_INDEX = 0xFFFF

# Foreign key used when a transaction has no invoices.
EMPTY_FOREIGN_KEY = bytes(FINGERPRINT_SIZE)


@dataclass(frozen=True)
class Memo:
    """Decoded view of a structured memo."""

    version: int
    type: PaymentType
    app_index: int
    foreign_key: bytes

    @property
    def invoice_hash(self) -> bytes:
        """The 28-byte invoice fingerprint carried in the foreign key."""
        return self.foreign_key[:FINGERPRINT_SIZE]


@dataclass(frozen=True)
class MemoSelection:
    """Result of applying the memo selection policy.

    Exactly one of ``text`` / ``structured`` is set, or neither.
    ``invoice_list`` is the list whose fingerprint was embedded, to be
    sent alongside the transaction.
    """

    text: str | None = None
    structured: bytes | None = None
    invoice_list: InvoiceList | None = None

    @property
    def is_empty(self) -> bool:
        return self.text is None and self.structured is None


# =========================================================================
# Fingerprints
# =========================================================================


def serialize_invoice_list(invoice_list: InvoiceList) -> dict[str, object]:
    """Canonical dict form of an InvoiceList (input to the fingerprint)."""
    return invoice_list.to_dict()


def invoice_list_hash(invoice_list: InvoiceList) -> bytes:
    """SHA-224 fingerprint of an InvoiceList (28 bytes).

    Deterministic. The empty list has a fixed fingerprint of its own,
    distinct from EMPTY_FOREIGN_KEY.
    """
    return content_fingerprint(serialize_invoice_list(invoice_list))


# =========================================================================
# Encode / decode
# =========================================================================


def build_memo(
    version: int,
    payment_type: PaymentType,
    app_index: int,
    foreign_key: bytes = b"",
) -> bytes:
    """Encode a structured memo.

    Args:
        version: Memo format version (0-7).
        payment_type: Payment type tag (0-31; UNKNOWN is not encodable).
        app_index: Application index (0-65535).
        foreign_key: Up to 29 bytes, normally an invoice fingerprint.

    Returns:
        32 memo bytes.

    Raises:
        ValueError: On any field outside its range.
    """
    if not 0 <= version <= 7:
        raise ValueError(f"invalid memo version: {version}")
    t = int(payment_type)
    if not 0 <= t <= 31:
        raise ValueError(f"invalid payment type for memo: {payment_type!r}")
    if not 0 <= app_index <= MAX_APP_INDEX:
        raise ValueError(f"app index out of range: {app_index}")
    if len(foreign_key) > MAX_FOREIGN_KEY_SIZE:
        raise ValueError(f"invalid foreign key length: {len(foreign_key)}")

    m = bytearray(MEMO_SIZE)
    m[0] = (MAGIC | (version << 2) | ((t & 0x7) << 5)) & 0xFF
    m[1] = ((t & 0x1C) >> 2) | ((app_index & 0x3F) << 2)
    m[2] = (app_index & 0x3FC0) >> 6
    m[3] = (app_index & 0xC000) >> 14

    fk = foreign_key
    if fk:
        m[3] |= (fk[0] << 2) & 0xFF
        # each output byte takes the top 2 bits of fk[n] and low 6 bits of fk[n+1]
        for i in range(4, 3 + len(fk)):
            m[i] = (fk[i - 4] >> 6) | ((fk[i - 3] << 2) & 0xFF)
        if len(fk) < MAX_FOREIGN_KEY_SIZE:
            m[len(fk) + 3] = fk[-1] >> 6

    return bytes(m)


def is_valid_memo(data: bytes) -> bool:
    """True if ``data`` looks like a structured memo we can decode."""
    if len(data) != MEMO_SIZE:
        return False
    if data[0] & 0x3 != MAGIC:
        return False
    version = (data[0] >> 2) & 0x7
    if version > MEMO_VERSION:
        return False
    t = (data[0] >> 5) | ((data[1] & 0x3) << 3)
    return t in PaymentType._value2member_map_


def parse_memo(data: bytes) -> Memo:
    """Decode a structured memo produced by ``build_memo``.

    Raises:
        ValueError: If ``data`` is not a valid structured memo.
    """
    if not is_valid_memo(data):
        raise ValueError("not a structured memo")

    version = (data[0] >> 2) & 0x7
    t = (data[0] >> 5) | ((data[1] & 0x3) << 3)
    app_index = (data[1] >> 2) | (data[2] << 6) | ((data[3] & 0x3) << 14)

    fk = bytearray(MAX_FOREIGN_KEY_SIZE)
    for i in range(MAX_FOREIGN_KEY_SIZE - 1):
        fk[i] = ((data[i + 3] >> 2) | ((data[i + 4] & 0x3) << 6)) & 0xFF
    fk[MAX_FOREIGN_KEY_SIZE - 1] = data[MEMO_SIZE - 1] >> 2

    return Memo(
        version=version,
        type=PaymentType(t),
        app_index=app_index,
        foreign_key=bytes(fk),
    )


def encode_memo_text(memo: bytes) -> str:
    """Base64 form used by token-ledger memo instructions."""
    return base64.b64encode(memo).decode("ascii")


def decode_memo_text(text: str) -> Memo | None:
    """Decode a memo instruction's text, or None if it is a plain text memo."""
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not is_valid_memo(raw):
        return None
    return parse_memo(raw)


# =========================================================================
# Selection policy
# =========================================================================


def select_memo(
    *,
    text: str,
    payment_type: PaymentType,
    app_index: int,
    invoice_list: InvoiceList | None,
) -> MemoSelection:
    """Apply the memo selection policy.

    Args:
        text: Plain text memo ("" when unset).
        payment_type: Type tag for structured memos.
        app_index: Configured app index (0 = none).
        invoice_list: Invoices to bind, or None.

    Returns:
        MemoSelection describing what to emit.

    Raises:
        ValueError: If the structured memo cannot be built.
    """
    if text:
        return MemoSelection(text=text)
    if app_index <= 0:
        return MemoSelection()

    fk = EMPTY_FOREIGN_KEY
    if invoice_list is not None and invoice_list.invoices:
        fk = invoice_list_hash(invoice_list)
    else:
        invoice_list = None

    return MemoSelection(
        structured=build_memo(MEMO_VERSION, payment_type, app_index, fk),
        invoice_list=invoice_list,
    )
