"""
Webhook handlers for sign-transaction and events callbacks.

The service calls back into the application over HTTP:

    sign_transaction   asks the app to approve (and, on the legacy ledger,
                       co-sign) a transaction before it is submitted
    events             pushes ledger events for the app's accounts

Both handlers are framework-free coroutines returning ``(status, body)``.
``create_webhook_router`` mounts them on a FastAPI APIRouter.

Request checks, in order:
    405  method is not POST
    401  HMAC mismatch (only when a secret is configured)
    400  body is not JSON, fails the JSON schema, or names an unsupported
         ledger version (missing version means 3; only 2..4 accepted)
    500  the application callback raised
    403  the application rejected the transaction
    200  otherwise

Authentication:
    ``X-Agora-HMAC-SHA256`` carries base64(HMAC-SHA256(secret, raw body)),
    compared in constant time.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import inspect
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import jsonschema
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from nexus_pay.canonical_json import b64, unb64
from nexus_pay.config import Environment, network_passphrase
from nexus_pay.keys import PrivateKey
from nexus_pay.logging_setup import get_logger
from nexus_pay.models import (
    InvoiceErrorReason,
    InvoiceList,
    LedgerVersion,
    PaymentType,
    ReadOnlyPayment,
)
from nexus_pay.signer import SignedLegacyEnvelope, SignedTokenTransaction
from nexus_pay.tx import payments_from_envelope, payments_from_token_transaction

_logger = get_logger("webhook")

AGORA_HMAC_HEADER = "X-Agora-HMAC-SHA256"
APP_USER_ID_HEADER = "X-App-User-ID"
APP_USER_PASSKEY_HEADER = "X-App-User-Passkey"

DEFAULT_WEBHOOK_VERSION = LedgerVersion.LEGACY_V3

WebhookResult = tuple[int, Any]


# =========================================================================
# Schemas
# =========================================================================

_INVOICE_LIST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["invoices"],
    "properties": {
        "invoices": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["items"],
                "properties": {
                    "items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["title"],
                            "properties": {
                                "title": {"type": "string"},
                                "description": {"type": "string"},
                                "amount": {"type": "integer"},
                                "sku": {"type": "string"},
                            },
                        },
                    }
                },
            },
        }
    },
}

SIGN_TRANSACTION_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "kin_version": {"type": "integer"},
        "envelope_xdr": {"type": "string"},
        "solana_transaction": {"type": "string"},
        "invoice_list": _INVOICE_LIST_SCHEMA,
    },
}

EVENTS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "array",
    "items": {"type": "object"},
}


# =========================================================================
# Signature verification
# =========================================================================


def _header(headers: Mapping[str, str], name: str) -> str:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return ""


def compute_signature(body: bytes, secret: str) -> str:
    """base64(HMAC-SHA256(secret, body)), the value senders put in the header."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(headers: Mapping[str, str], body: bytes, secret: str) -> bool:
    """True if the HMAC header matches ``body`` under ``secret``."""
    encoded = _header(headers, AGORA_HMAC_HEADER)
    if not encoded:
        return False
    try:
        sig = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, sig)


# =========================================================================
# Sign transaction
# =========================================================================


@dataclass(frozen=True)
class SignTransactionRequest:
    """A transaction the service wants the application to approve.

    Exactly one of ``envelope`` (legacy) and ``transaction`` (token) is set.
    """

    version: LedgerVersion
    payments: tuple[ReadOnlyPayment, ...]
    user_id: str = ""
    user_passkey: str = ""
    envelope: SignedLegacyEnvelope | None = None
    transaction: SignedTokenTransaction | None = None

    def tx_id(self) -> bytes:
        """Legacy hash (32 bytes) or token signature (64 bytes)."""
        if self.transaction is not None:
            return self.transaction.tx_id
        if self.envelope is not None:
            return self.envelope.tx_hash
        raise ValueError("this request has no transaction")


@dataclass
class SignTransactionResponse:
    """The application's answer. Approve by default; reject or mark to refuse."""

    envelope: SignedLegacyEnvelope | None = None
    rejected: bool = False
    invoice_errors: list[dict[str, object]] = field(default_factory=list)

    def sign(self, key: PrivateKey) -> None:
        """Co-sign the legacy envelope. No-op for token transactions."""
        if self.envelope is not None:
            self.envelope = self.envelope.add_signature(key)

    def reject(self) -> None:
        self.rejected = True

    def _mark(self, index: int, reason: InvoiceErrorReason) -> None:
        self.rejected = True
        self.invoice_errors.append({"operation_index": index, "reason": reason.value.lower()})

    def mark_already_paid(self, index: int) -> None:
        self._mark(index, InvoiceErrorReason.ALREADY_PAID)

    def mark_wrong_destination(self, index: int) -> None:
        self._mark(index, InvoiceErrorReason.WRONG_DESTINATION)

    def mark_sku_not_found(self, index: int) -> None:
        self._mark(index, InvoiceErrorReason.SKU_NOT_FOUND)


SignTransactionCallback = Callable[
    [SignTransactionRequest, SignTransactionResponse], "Awaitable[None] | None"
]
EventsCallback = Callable[[list[dict[str, Any]]], "Awaitable[None] | None"]


def _preflight(
    method: str,
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    schema: dict[str, Any],
) -> tuple[Any, WebhookResult | None]:
    """Shared method/HMAC/JSON/schema checks. Returns (data, error)."""
    if method.upper() != "POST":
        return None, (405, None)
    if secret and not verify_signature(headers, body, secret):
        return None, (401, None)
    try:
        data = json.loads(body)
        jsonschema.validate(data, schema)
    except (ValueError, jsonschema.ValidationError):
        return None, (400, {"message": "invalid body"})
    return data, None


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


def _parse_sign_request(
    data: dict[str, Any],
    headers: Mapping[str, str],
    environment: Environment,
) -> tuple[SignTransactionRequest, SignedLegacyEnvelope | None]:
    """Decode a validated request body.

    Raises:
        ValueError: Unsupported version or undecodable transaction.
    """
    raw_version = data.get("kin_version") or DEFAULT_WEBHOOK_VERSION
    try:
        version = LedgerVersion(raw_version)
    except ValueError:
        raise ValueError("invalid kin version") from None

    invoice_list = None
    if data.get("invoice_list"):
        invoice_list = InvoiceList.from_dict(data["invoice_list"])

    common = {
        "version": version,
        "user_id": _header(headers, APP_USER_ID_HEADER),
        "user_passkey": _header(headers, APP_USER_PASSKEY_HEADER),
    }

    if version == LedgerVersion.TOKEN_V4:
        tx = SignedTokenTransaction.from_blob(unb64(data.get("solana_transaction", "")))
        payments = payments_from_token_transaction(tx.transaction, invoice_list=invoice_list)
        return SignTransactionRequest(payments=payments, transaction=tx, **common), None

    envelope = SignedLegacyEnvelope.from_blob(
        unb64(data.get("envelope_xdr", "")),
        network_passphrase(environment, version),
    )
    payments = payments_from_envelope(
        envelope.envelope,
        version=version,
        default_type=PaymentType.SPEND,
        invoice_list=invoice_list,
    )
    return SignTransactionRequest(payments=payments, envelope=envelope, **common), envelope


async def handle_sign_transaction(
    method: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    environment: Environment,
    secret: str | None,
    callback: SignTransactionCallback,
) -> WebhookResult:
    """Decode, verify and dispatch a sign-transaction webhook call."""
    data, error = _preflight(method, headers, body, secret, SIGN_TRANSACTION_SCHEMA)
    if error is not None:
        return error

    try:
        request, envelope = _parse_sign_request(data, headers, environment)
    except (ValueError, KeyError) as e:
        return 400, {"message": str(e)}

    response = SignTransactionResponse(envelope=envelope)
    try:
        await _invoke(callback, request, response)
    except Exception:
        _logger.exception("webhook:sign_transaction_callback_failed")
        return 500, None

    if response.rejected:
        return 403, {"message": "rejected", "invoice_errors": list(response.invoice_errors)}
    if response.envelope is not None:
        return 200, {"envelope_xdr": b64(response.envelope.blob())}
    return 200, {}


async def handle_events(
    method: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    secret: str | None,
    callback: EventsCallback,
) -> WebhookResult:
    """Decode, verify and dispatch an events webhook call."""
    data, error = _preflight(method, headers, body, secret, EVENTS_SCHEMA)
    if error is not None:
        return error

    try:
        await _invoke(callback, data)
    except Exception:
        _logger.exception("webhook:events_callback_failed")
        return 500, None
    return 200, None


# =========================================================================
# FastAPI
# =========================================================================


def create_webhook_router(
    *,
    environment: Environment,
    secret: str | None = None,
    sign_transaction: SignTransactionCallback | None = None,
    events: EventsCallback | None = None,
    prefix: str = "",
) -> APIRouter:
    """APIRouter exposing ``/sign_transaction`` and ``/events``.

    Only the routes whose callbacks are provided are mounted.
    """
    router = APIRouter(prefix=prefix, tags=["webhooks"])
    methods = ["GET", "POST", "PUT", "DELETE", "PATCH"]

    def _respond(result: WebhookResult) -> JSONResponse:
        status, payload = result
        return JSONResponse(content=payload, status_code=status)

    if sign_transaction is not None:
        sign_cb = sign_transaction

        @router.api_route("/sign_transaction", methods=methods)
        async def sign_transaction_route(request: Request) -> JSONResponse:
            body = await request.body()
            return _respond(
                await handle_sign_transaction(
                    request.method,
                    request.headers,
                    body,
                    environment=environment,
                    secret=secret,
                    callback=sign_cb,
                )
            )

    if events is not None:
        events_cb = events

        @router.api_route("/events", methods=methods)
        async def events_route(request: Request) -> JSONResponse:
            body = await request.body()
            return _respond(
                await handle_events(
                    request.method,
                    request.headers,
                    body,
                    secret=secret,
                    callback=events_cb,
                )
            )

    return router
