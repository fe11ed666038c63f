"""
nexus-pay: payment client for a dual ledger mid-migration.

Public API:

    Client:
        - ``new_client()``: build a Client for an environment.
        - ``Client``: version router exposing create_account, get_balance,
          resolve_token_accounts, get_transaction, submit_payment,
          submit_earn_batch, request_airdrop, get_events.

    Configuration:
        - ``Environment``, ``ClientOptions``.

    Data model:
        - ``Payment``, ``Earn``, ``EarnBatch``, ``Invoice``, ``LineItem``,
          ``InvoiceList``, results and enums.

    Keys:
        - ``PrivateKey``, ``PublicKey``.

    Errors:
        - ``PaymentError`` and its subclasses, ``InvalidPaymentError``,
          ``ConfigurationError``, ``RpcError``.

    Memo:
        - ``build_memo()``, ``parse_memo()``, ``invoice_list_hash()``.

    Webhooks:
        - ``create_webhook_router()`` and the framework-free handlers in
          ``nexus_pay.webhook``.
"""

from nexus_pay.client import Client, new_client
from nexus_pay.config import ClientOptions, Environment
from nexus_pay.errors import (
    AccountDoesNotExistError,
    AccountExistsError,
    AlreadySubmittedError,
    BadNonceError,
    ConfigurationError,
    ErrorKind,
    InsufficientBalanceError,
    InvalidPaymentError,
    InvalidSignatureError,
    InvoiceError,
    NoSubsidizerError,
    PayerRequiredError,
    PaymentError,
    RpcError,
    RpcStatus,
    TransactionNotFoundError,
    TransactionRejectedError,
    UnexpectedError,
)
from nexus_pay.keys import PrivateKey, PublicKey
from nexus_pay.logging_setup import configure_logging
from nexus_pay.memo import Memo, build_memo, invoice_list_hash, parse_memo
from nexus_pay.models import (
    MAX_BATCH_SIZE,
    AccountResolution,
    Commitment,
    Earn,
    EarnBatch,
    EarnBatchResult,
    EarnError,
    EventsBatch,
    Invoice,
    InvoiceErrorReason,
    InvoiceList,
    LedgerVersion,
    LineItem,
    Payment,
    PaymentType,
    ReadOnlyPayment,
    TransactionData,
    TransactionState,
)
from nexus_pay.webhook import create_webhook_router

__version__ = "0.1.0"

__all__ = [
    "MAX_BATCH_SIZE",
    "AccountDoesNotExistError",
    "AccountExistsError",
    "AccountResolution",
    "AlreadySubmittedError",
    "BadNonceError",
    "Client",
    "ClientOptions",
    "Commitment",
    "ConfigurationError",
    "Earn",
    "EarnBatch",
    "EarnBatchResult",
    "EarnError",
    "Environment",
    "ErrorKind",
    "EventsBatch",
    "InsufficientBalanceError",
    "InvalidPaymentError",
    "InvalidSignatureError",
    "Invoice",
    "InvoiceError",
    "InvoiceErrorReason",
    "InvoiceList",
    "LedgerVersion",
    "LineItem",
    "Memo",
    "NoSubsidizerError",
    "PayerRequiredError",
    "Payment",
    "PaymentError",
    "PaymentType",
    "PrivateKey",
    "PublicKey",
    "ReadOnlyPayment",
    "RpcError",
    "RpcStatus",
    "TransactionData",
    "TransactionNotFoundError",
    "TransactionRejectedError",
    "TransactionState",
    "UnexpectedError",
    "__version__",
    "build_memo",
    "configure_logging",
    "create_webhook_router",
    "invoice_list_hash",
    "new_client",
    "parse_memo",
]
