"""
Ledger RPC boundary: protocol, JSON-RPC client, transport and retry.
"""

from nexus_pay.rpc.client import (
    EventsPage,
    JsonRpcLedgerClient,
    LedgerRpc,
    RawEvent,
    RawInvoiceError,
    SubmitResponse,
    TransactionRecord,
    iter_events,
)
from nexus_pay.rpc.retry import RetryPolicy, is_transient, retry
from nexus_pay.rpc.transport import HttpxTransport, JsonRpcTransport

__all__ = [
    "EventsPage",
    "HttpxTransport",
    "JsonRpcLedgerClient",
    "JsonRpcTransport",
    "LedgerRpc",
    "RawEvent",
    "RawInvoiceError",
    "RetryPolicy",
    "SubmitResponse",
    "TransactionRecord",
    "is_transient",
    "iter_events",
    "retry",
]
