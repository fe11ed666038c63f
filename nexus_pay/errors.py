"""
Error taxonomy and result mapping.

Two layers:

    Taxonomy:
        A closed set of exception classes, one per outcome kind a caller
        can observe. Each carries a stable ``kind`` (ErrorKind). They are
        used both as raised exceptions and as *values* inside a
        SubmitTransactionResult, so per-operation outcomes can be reported
        without unwinding the submission.

    Result mapping (pure, no I/O):
        Tables from raw server outcome codes to taxonomy classes. Every
        defined code maps to exactly one class or to "no error". An
        unrecognized code raises UnexpectedError: the client and server
        disagree about the protocol and guessing would hide it.

Outcome code families:
    - submit result:         OK, ALREADY_SUBMITTED, FAILED, REJECTED,
                             INVOICE_ERROR, PAYER_REQUIRED
    - token tx error reason: NONE, UNKNOWN, UNAUTHORIZED, BAD_NONCE,
                             INSUFFICIENT_FUNDS, INVALID_ACCOUNT
    - legacy tx result:      tx* codes
    - legacy op result:      op* codes
    - invoice error reason:  ALREADY_PAID, WRONG_DESTINATION, SKU_NOT_FOUND
    - create account:        OK, EXISTS, PAYER_REQUIRED, BAD_NONCE
    - account info:          OK, NOT_FOUND
    - airdrop:               OK, NOT_FOUND, INSUFFICIENT_KIN
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum

from nexus_pay.models import InvoiceErrorReason, TransactionErrors


class ErrorKind(StrEnum):
    ACCOUNT_DOES_NOT_EXIST = "ACCOUNT_DOES_NOT_EXIST"
    ACCOUNT_EXISTS = "ACCOUNT_EXISTS"
    TRANSACTION_REJECTED = "TRANSACTION_REJECTED"
    BAD_NONCE = "BAD_NONCE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PAYER_REQUIRED = "PAYER_REQUIRED"
    NO_SUBSIDIZER = "NO_SUBSIDIZER"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    INVOICE_ERROR = "INVOICE_ERROR"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    UNEXPECTED = "UNEXPECTED"


# =========================================================================
# Taxonomy
# =========================================================================


class PaymentError(Exception):
    """Base class for every outcome in the taxonomy.

    ``tx_id`` is filled in by the client when the error is raised for a
    submission that produced a transaction identifier.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED
    default_message = "payment error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.tx_id: bytes | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PaymentError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class AccountDoesNotExistError(PaymentError):
    kind = ErrorKind.ACCOUNT_DOES_NOT_EXIST
    default_message = "account does not exist"


class AccountExistsError(PaymentError):
    kind = ErrorKind.ACCOUNT_EXISTS
    default_message = "account already exists"


class TransactionRejectedError(PaymentError):
    kind = ErrorKind.TRANSACTION_REJECTED
    default_message = "transaction rejected"


class BadNonceError(PaymentError):
    kind = ErrorKind.BAD_NONCE
    default_message = "bad nonce"


class InsufficientBalanceError(PaymentError):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    default_message = "insufficient balance"


class InvalidSignatureError(PaymentError):
    kind = ErrorKind.INVALID_SIGNATURE
    default_message = "invalid signature"


class PayerRequiredError(PaymentError):
    kind = ErrorKind.PAYER_REQUIRED
    default_message = "payer required"


class NoSubsidizerError(PaymentError):
    kind = ErrorKind.NO_SUBSIDIZER
    default_message = "no subsidizer available"


class AlreadySubmittedError(PaymentError):
    kind = ErrorKind.ALREADY_SUBMITTED
    default_message = "transaction already submitted"


class TransactionNotFoundError(PaymentError):
    kind = ErrorKind.TRANSACTION_NOT_FOUND
    default_message = "transaction not found"


class UnexpectedError(PaymentError):
    kind = ErrorKind.UNEXPECTED
    default_message = "unexpected server outcome"


class InvoiceError(PaymentError):
    """An invoice attached to operation ``op_index`` was refused."""

    kind = ErrorKind.INVOICE_ERROR

    def __init__(self, reason: InvoiceErrorReason, op_index: int = 0) -> None:
        super().__init__(f"invoice error: {reason.value.lower()} (op {op_index})")
        self.reason = reason
        self.op_index = op_index


# =========================================================================
# Non-taxonomy errors
# =========================================================================


class ConfigurationError(ValueError):
    """Client misconfiguration (unsupported ledger version, bad options)."""


class InvalidPaymentError(ValueError):
    """A payment or batch failed validation before any network call."""


class RpcStatus(StrEnum):
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"
    UNAVAILABLE = "UNAVAILABLE"
    UNIMPLEMENTED = "UNIMPLEMENTED"
    UNKNOWN = "UNKNOWN"


# Statuses worth retrying at the transport layer.
TRANSIENT_STATUSES = frozenset({RpcStatus.INTERNAL, RpcStatus.UNAVAILABLE, RpcStatus.UNKNOWN})


class RpcError(Exception):
    """A transport or RPC status failure.

    ``FAILED_PRECONDITION`` on a legacy-ledger call means the legacy
    ledger has been retired and the client must move to the token ledger.
    """

    def __init__(self, code: RpcStatus, message: str = "") -> None:
        super().__init__(f"{code.value}: {message}" if message else code.value)
        self.code = code
        self.message = message

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_STATUSES

    @property
    def ledger_migrated(self) -> bool:
        return self.code == RpcStatus.FAILED_PRECONDITION


# =========================================================================
# Result mapping tables
# =========================================================================

_ErrorTable = Mapping[str, "type[PaymentError] | None"]

SUBMIT_RESULTS: _ErrorTable = {
    "OK": None,
    "ALREADY_SUBMITTED": AlreadySubmittedError,
    "FAILED": None,  # detail lives in the transaction error
    "REJECTED": TransactionRejectedError,
    "INVOICE_ERROR": None,  # detail lives in the invoice errors
    "PAYER_REQUIRED": PayerRequiredError,
}

TOKEN_TX_ERRORS: _ErrorTable = {
    "NONE": None,
    "UNKNOWN": UnexpectedError,
    "UNAUTHORIZED": InvalidSignatureError,
    "BAD_NONCE": BadNonceError,
    "INSUFFICIENT_FUNDS": InsufficientBalanceError,
    "INVALID_ACCOUNT": AccountDoesNotExistError,
}

LEGACY_TX_RESULTS: _ErrorTable = {
    "txSUCCESS": None,
    "txFAILED": None,  # detail lives in the operation results
    "txTOO_EARLY": TransactionRejectedError,
    "txTOO_LATE": TransactionRejectedError,
    "txMISSING_OPERATION": TransactionRejectedError,
    "txBAD_SEQ": BadNonceError,
    "txBAD_AUTH": InvalidSignatureError,
    "txBAD_AUTH_EXTRA": InvalidSignatureError,
    "txINSUFFICIENT_BALANCE": InsufficientBalanceError,
    "txNO_ACCOUNT": AccountDoesNotExistError,
    "txINSUFFICIENT_FEE": TransactionRejectedError,
    "txNOT_SUPPORTED": TransactionRejectedError,
    "txINTERNAL_ERROR": UnexpectedError,
}

LEGACY_OP_RESULTS: _ErrorTable = {
    "opSUCCESS": None,
    "opBAD_AUTH": InvalidSignatureError,
    "opNO_ACCOUNT": AccountDoesNotExistError,
    "opNOT_SUPPORTED": TransactionRejectedError,
    "opMALFORMED": TransactionRejectedError,
    "opUNDERFUNDED": InsufficientBalanceError,
    "opSRC_NO_TRUST": TransactionRejectedError,
    "opSRC_NOT_AUTHORIZED": TransactionRejectedError,
    "opNO_DESTINATION": AccountDoesNotExistError,
    "opNO_TRUST": TransactionRejectedError,
    "opNOT_AUTHORIZED": TransactionRejectedError,
    "opLINE_FULL": TransactionRejectedError,
    "opNO_ISSUER": TransactionRejectedError,
    "opALREADY_EXIST": AccountExistsError,
}

CREATE_ACCOUNT_RESULTS: _ErrorTable = {
    "OK": None,
    "EXISTS": AccountExistsError,
    "PAYER_REQUIRED": PayerRequiredError,
    "BAD_NONCE": BadNonceError,
}

ACCOUNT_INFO_RESULTS: _ErrorTable = {
    "OK": None,
    "NOT_FOUND": AccountDoesNotExistError,
}

AIRDROP_RESULTS: _ErrorTable = {
    "OK": None,
    "NOT_FOUND": AccountDoesNotExistError,
    "INSUFFICIENT_KIN": InsufficientBalanceError,
}

_INVOICE_REASONS = {
    "ALREADY_PAID": InvoiceErrorReason.ALREADY_PAID,
    "WRONG_DESTINATION": InvoiceErrorReason.WRONG_DESTINATION,
    "SKU_NOT_FOUND": InvoiceErrorReason.SKU_NOT_FOUND,
}


# =========================================================================
# Mapping functions
# =========================================================================


def classify(table: _ErrorTable, code: str, *, what: str) -> PaymentError | None:
    """Map a raw outcome code to a taxonomy error instance (or None).

    Args:
        table: One of the ``*_RESULTS`` / ``*_ERRORS`` tables above.
        code: Raw code as reported by the server.
        what: Code family, used in the error message.

    Returns:
        A fresh error instance, or None for "no error".

    Raises:
        UnexpectedError: If ``code`` is not defined in ``table``.
    """
    if code not in table:
        raise UnexpectedError(f"unrecognized {what}: {code!r}")
    cls = table[code]
    return cls() if cls is not None else None


def classify_invoice_error(reason: str, op_index: int) -> InvoiceError:
    """Map a raw invoice error reason to an InvoiceError.

    Raises:
        UnexpectedError: For reasons outside the three known ones.
    """
    try:
        return InvoiceError(_INVOICE_REASONS[reason], op_index)
    except KeyError:
        raise UnexpectedError(f"unrecognized invoice error reason: {reason!r}") from None


def errors_from_legacy_result(
    result_code: str,
    op_codes: Sequence[str] = (),
) -> TransactionErrors:
    """Build TransactionErrors from a legacy result code and per-op codes.

    For ``txFAILED`` the top-level error is the first failing operation's
    error, so callers that only look at ``tx_error`` still see a cause.
    """
    tx_error = classify(LEGACY_TX_RESULTS, result_code, what="legacy tx result")
    payment_errors = tuple(
        classify(LEGACY_OP_RESULTS, code, what="legacy op result") for code in op_codes
    )

    if result_code == "txFAILED":
        tx_error = next((e for e in payment_errors if e is not None), None)
        if tx_error is None:
            raise UnexpectedError("txFAILED reported without a failing operation")

    if tx_error is None:
        return TransactionErrors()
    return TransactionErrors(tx_error=tx_error, payment_errors=payment_errors)


def errors_from_token_error(
    reason: str,
    instruction_index: int | None,
    transfer_indices: Sequence[int],
) -> TransactionErrors:
    """Build TransactionErrors from a token-ledger transaction error.

    Args:
        reason: Raw TOKEN_TX_ERRORS reason.
        instruction_index: Index of the failing instruction, if reported.
        transfer_indices: Instruction index of each transfer, in payment
            order. Used to attribute the error to a payment.
    """
    tx_error = classify(TOKEN_TX_ERRORS, reason, what="token tx error")
    if tx_error is None:
        return TransactionErrors()

    if instruction_index is None or instruction_index not in transfer_indices:
        return TransactionErrors(tx_error=tx_error)

    payment_errors: list[PaymentError | None] = [None] * len(transfer_indices)
    payment_errors[list(transfer_indices).index(instruction_index)] = tx_error
    return TransactionErrors(tx_error=tx_error, payment_errors=tuple(payment_errors))
