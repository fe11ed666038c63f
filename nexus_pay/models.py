"""
Data model for payments against the dual ledger.

Everything here is a plain value: frozen dataclasses and enums, no I/O.
Caller-supplied inputs (Payment, EarnBatch, Invoice) are never mutated by
the pipeline. When account resolution substitutes a sender or destination,
a new value is produced with ``dataclasses.replace``.

Units:
    Amounts are always in quarks, the smallest unit on the modern ledger.
    Conversion to the older ledger's finer base unit happens only when a
    legacy envelope is assembled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Any

from nexus_pay.canonical_json import b64, unb64
from nexus_pay.keys import PrivateKey, PublicKey

if TYPE_CHECKING:
    from nexus_pay.errors import InvoiceError, PaymentError

# Maximum number of earns in one batch (one transaction).
MAX_BATCH_SIZE = 15


# =========================================================================
# Enums
# =========================================================================


class LedgerVersion(IntEnum):
    """Ledger protocol generation. 2 and 3 share the sequence-number model."""

    LEGACY_V2 = 2
    LEGACY_V3 = 3
    TOKEN_V4 = 4

    @property
    def is_legacy(self) -> bool:
        return self in (LedgerVersion.LEGACY_V2, LedgerVersion.LEGACY_V3)


class PaymentType(IntEnum):
    """Payment type tag carried in structured memos (5 bits on the wire)."""

    UNKNOWN = -1
    NONE = 0
    EARN = 1
    SPEND = 2
    P2P = 3


class Commitment(StrEnum):
    """Requested finality for token-ledger reads and submissions."""

    RECENT = "RECENT"
    SINGLE = "SINGLE"
    ROOT = "ROOT"
    MAX = "MAX"


class AccountResolution(StrEnum):
    """Whether an absent account may be replaced by a resolved token account."""

    EXACT = "EXACT"
    PREFERRED = "PREFERRED"


class TransactionState(StrEnum):
    UNKNOWN = "UNKNOWN"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class InvoiceErrorReason(StrEnum):
    UNKNOWN = "UNKNOWN"
    ALREADY_PAID = "ALREADY_PAID"
    WRONG_DESTINATION = "WRONG_DESTINATION"
    SKU_NOT_FOUND = "SKU_NOT_FOUND"


# =========================================================================
# Invoices
# =========================================================================


@dataclass(frozen=True)
class LineItem:
    title: str
    description: str = ""
    amount: int = 0
    sku: bytes = b""

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "description": self.description,
            "amount": self.amount,
            "sku": b64(self.sku),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            title=data["title"],
            description=data.get("description", ""),
            amount=int(data.get("amount", 0)),
            sku=unb64(data.get("sku", "")),
        )


@dataclass(frozen=True)
class Invoice:
    """An ordered set of line items describing one payment."""

    items: tuple[LineItem, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "items", tuple(self.items))

    def to_dict(self) -> dict[str, object]:
        return {"items": [item.to_dict() for item in self.items]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Invoice:
        return cls(items=tuple(LineItem.from_dict(i) for i in data["items"]))


@dataclass(frozen=True)
class InvoiceList:
    """Invoices for a transaction, one per payment operation, in order."""

    invoices: tuple[Invoice, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "invoices", tuple(self.invoices))

    def to_dict(self) -> dict[str, object]:
        return {"invoices": [inv.to_dict() for inv in self.invoices]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvoiceList:
        return cls(invoices=tuple(Invoice.from_dict(i) for i in data.get("invoices", [])))


# =========================================================================
# Payments
# =========================================================================


@dataclass(frozen=True)
class Payment:
    """A single payment from ``sender`` to ``destination``.

    ``memo`` and ``invoice`` are mutually exclusive. ``channel`` is only
    used on the legacy ledger, where it supplies the sequence number and
    pays the fee. ``dedupe_id`` lets the server collapse resubmissions of
    the same logical payment.
    """

    sender: PrivateKey
    destination: PublicKey
    quarks: int
    type: PaymentType = PaymentType.NONE
    memo: str = ""
    invoice: Invoice | None = None
    channel: PrivateKey | None = None
    dedupe_id: bytes | None = None


@dataclass(frozen=True)
class Earn:
    destination: PublicKey
    quarks: int
    invoice: Invoice | None = None


@dataclass(frozen=True)
class EarnBatch:
    """Up to MAX_BATCH_SIZE earns sent by one sender in one transaction."""

    sender: PrivateKey
    earns: tuple[Earn, ...]
    channel: PrivateKey | None = None
    memo: str = ""
    dedupe_id: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "earns", tuple(self.earns))


@dataclass(frozen=True)
class ReadOnlyPayment:
    """A payment reconstructed from a ledger record."""

    sender: PublicKey
    destination: PublicKey
    type: PaymentType
    quarks: int
    memo: str = ""
    invoice: Invoice | None = None


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class TransactionErrors:
    """Errors attached to a submitted transaction.

    Attributes:
        tx_error: Top-level transaction error, or None.
        payment_errors: One entry per payment operation (None where that
            operation did not fail). Empty when the ledger did not report
            per-operation results.
    """

    tx_error: PaymentError | None = None
    payment_errors: tuple[PaymentError | None, ...] = ()


@dataclass(frozen=True)
class SubmitTransactionResult:
    """Outcome of one submission.

    ``tx_id`` is a 32-byte hash on the legacy ledger and a 64-byte
    signature on the token ledger.
    """

    tx_id: bytes
    errors: TransactionErrors = field(default_factory=TransactionErrors)
    invoice_errors: tuple[InvoiceError, ...] = ()


@dataclass(frozen=True)
class TransactionData:
    tx_id: bytes
    state: TransactionState = TransactionState.UNKNOWN
    payments: tuple[ReadOnlyPayment, ...] = ()
    errors: TransactionErrors | None = None


@dataclass(frozen=True)
class EarnError:
    earn_index: int
    error: PaymentError


@dataclass(frozen=True)
class EarnBatchResult:
    tx_id: bytes
    tx_error: PaymentError | None = None
    earn_errors: tuple[EarnError, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.tx_error is None


@dataclass(frozen=True)
class AccountInfo:
    account_id: PublicKey
    balance: int
    sequence: int = 0


@dataclass(frozen=True)
class ServiceConfig:
    """Token-ledger service configuration."""

    subsidizer: PublicKey | None = None
    token: PublicKey | None = None
    token_program: PublicKey | None = None


class EventKind(StrEnum):
    BALANCE_UPDATE = "balance_update"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class AccountEvent:
    kind: EventKind
    account: PublicKey
    balance: int | None = None
    transaction: TransactionData | None = None


@dataclass(frozen=True)
class EventsBatch:
    events: tuple[AccountEvent, ...] = ()
