"""
Ledger RPC boundary.

``LedgerRpc`` is the protocol the engine depends on; ``JsonRpcLedgerClient``
is the network implementation over an injectable JsonRpcTransport. Tests
use an in-memory fake of the protocol instead.

The protocol is deliberately thin. Methods either return boring frozen
dataclasses carrying raw outcome codes (submissions), or raise taxonomy
errors for outcomes that are always terminal (account not found, account
exists). Mapping submission outcomes to the taxonomy is the retrier's job.

Request/response conventions (rippled style):
    - Request:  {"method": "...", "params": [{...}], "id": n}
    - Success:  {"result": {"status": "success", ...}}
    - Error:    {"result": {"status": "error", "error": "<RpcStatus>",
                            "error_message": "..."}}
    - Bytes fields are base64; keys are hex.

Legacy-ledger methods carry the ledger version in their params. A legacy
method answered with FAILED_PRECONDITION means the legacy ledger has been
retired; that RpcError propagates so the router can upgrade.

Transient failures (RpcError with a transient status, httpx transport
errors) are retried with jittered backoff. ``ALREADY_SUBMITTED`` seen on
a retried submit means the earlier attempt landed, and is reported as OK.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from nexus_pay.canonical_json import b64, unb64
from nexus_pay.errors import (
    ACCOUNT_INFO_RESULTS,
    AIRDROP_RESULTS,
    CREATE_ACCOUNT_RESULTS,
    AccountDoesNotExistError,
    RpcError,
    RpcStatus,
    classify,
)
from nexus_pay.keys import PublicKey
from nexus_pay.logging_setup import get_logger
from nexus_pay.models import (
    AccountInfo,
    Commitment,
    InvoiceList,
    ServiceConfig,
    TransactionState,
)
from nexus_pay.rpc.retry import RetryPolicy, retry
from nexus_pay.rpc.transport import HttpxTransport, JsonRpcTransport

_logger = get_logger("rpc.client")

_request_ids = itertools.count(1)


# =========================================================================
# Response types
# =========================================================================


@dataclass(frozen=True)
class RawInvoiceError:
    op_index: int
    reason: str


@dataclass(frozen=True)
class SubmitResponse:
    """Raw outcome of one submission.

    Attributes:
        tx_id: Legacy hash or token signature as reported by the server.
        result: Submit result code (OK, ALREADY_SUBMITTED, FAILED,
            REJECTED, INVOICE_ERROR, PAYER_REQUIRED).
        result_code: Legacy tx* code (legacy FAILED only).
        op_codes: Legacy op* codes, one per operation.
        tx_error: Token tx error reason (token FAILED only).
        instruction_index: Failing instruction, when the token ledger
            reports one.
        invoice_errors: Raw invoice errors (INVOICE_ERROR only).
    """

    tx_id: bytes
    result: str
    result_code: str | None = None
    op_codes: tuple[str, ...] = ()
    tx_error: str | None = None
    instruction_index: int | None = None
    invoice_errors: tuple[RawInvoiceError, ...] = ()


@dataclass(frozen=True)
class TransactionRecord:
    """A transaction as stored by the ledger, still in wire form."""

    tx_id: bytes
    state: TransactionState = TransactionState.UNKNOWN
    blob: bytes | None = None
    invoice_list: InvoiceList | None = None
    result_code: str | None = None
    op_codes: tuple[str, ...] = ()
    tx_error: str | None = None
    instruction_index: int | None = None


@dataclass(frozen=True)
class RawEvent:
    kind: str
    balance: int | None = None
    transaction: TransactionRecord | None = None


@dataclass(frozen=True)
class EventsPage:
    events: tuple[RawEvent, ...] = ()
    cursor: str | None = None
    closed: bool = False


# =========================================================================
# Protocol
# =========================================================================


@runtime_checkable
class LedgerRpc(Protocol):
    """Network operations against both ledgers."""

    # Legacy ledger

    async def create_account_legacy(self, account: PublicKey, *, version: int) -> None: ...

    async def get_account_info_legacy(
        self, account: PublicKey, *, version: int
    ) -> AccountInfo: ...

    async def submit_legacy(
        self,
        blob: bytes,
        invoice_list: InvoiceList | None,
        *,
        version: int,
    ) -> SubmitResponse: ...

    async def get_transaction_legacy(self, tx_id: bytes, *, version: int) -> TransactionRecord: ...

    # Token ledger

    async def get_service_config(self) -> ServiceConfig: ...

    async def get_recent_blockhash(self) -> bytes: ...

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int: ...

    async def create_account(self, blob: bytes, *, commitment: Commitment) -> str: ...

    async def get_account_info(
        self, account: PublicKey, *, commitment: Commitment
    ) -> AccountInfo: ...

    async def resolve_token_accounts(self, account: PublicKey) -> list[PublicKey]: ...

    async def submit_transaction(
        self,
        blob: bytes,
        invoice_list: InvoiceList | None,
        *,
        commitment: Commitment,
        dedupe_id: bytes | None = None,
    ) -> SubmitResponse: ...

    async def get_transaction(
        self, tx_id: bytes, *, commitment: Commitment
    ) -> TransactionRecord: ...

    async def request_airdrop(
        self, account: PublicKey, quarks: int, *, commitment: Commitment
    ) -> bytes: ...

    async def get_events(self, account: PublicKey, cursor: str | None = None) -> EventsPage: ...


# =========================================================================
# Response parsing (pure functions, no I/O)
# =========================================================================


def _result(response: dict[str, Any]) -> dict[str, Any]:
    """Extract ``result``, raising RpcError for server-level errors."""
    result = response.get("result")
    if not isinstance(result, dict):
        raise RpcError(RpcStatus.UNKNOWN, "no result in response")
    if result.get("status") == "error":
        try:
            code = RpcStatus(result.get("error", "UNKNOWN"))
        except ValueError:
            code = RpcStatus.UNKNOWN
        raise RpcError(code, result.get("error_message") or str(result.get("error", "")))
    return result


def _invoice_list_or_none(data: Any) -> InvoiceList | None:
    if not isinstance(data, dict):
        return None
    return InvoiceList.from_dict(data)


def _parse_invoice_errors(items: Any) -> tuple[RawInvoiceError, ...]:
    return tuple(
        RawInvoiceError(op_index=int(e.get("op_index", 0)), reason=str(e["reason"]))
        for e in items or ()
    )


def _parse_submit(result: dict[str, Any], id_field: str) -> SubmitResponse:
    tx_error = result.get("transaction_error") or {}
    index = tx_error.get("instruction_index")
    return SubmitResponse(
        tx_id=unb64(result.get(id_field, "")),
        result=str(result.get("result", "")),
        result_code=result.get("result_code"),
        op_codes=tuple(result.get("op_results") or ()),
        tx_error=tx_error.get("reason"),
        instruction_index=int(index) if index is not None else None,
        invoice_errors=_parse_invoice_errors(result.get("invoice_errors")),
    )


def _parse_record(result: dict[str, Any], tx_id: bytes) -> TransactionRecord:
    try:
        state = TransactionState(result.get("state", "UNKNOWN"))
    except ValueError:
        state = TransactionState.UNKNOWN
    tx_error = result.get("transaction_error") or {}
    index = tx_error.get("instruction_index")
    blob = result.get("transaction")
    return TransactionRecord(
        tx_id=tx_id,
        state=state,
        blob=unb64(blob) if blob else None,
        invoice_list=_invoice_list_or_none(result.get("invoice_list")),
        result_code=result.get("result_code"),
        op_codes=tuple(result.get("op_results") or ()),
        tx_error=tx_error.get("reason"),
        instruction_index=int(index) if index is not None else None,
    )


def _parse_account_info(result: dict[str, Any], account: PublicKey) -> AccountInfo:
    err = classify(
        ACCOUNT_INFO_RESULTS,
        str(result.get("result", "OK")),
        what="account info result",
    )
    if err is not None:
        raise err
    return AccountInfo(
        account_id=account,
        balance=int(result.get("balance", 0)),
        sequence=int(result.get("sequence", 0)),
    )


def _parse_events(result: dict[str, Any]) -> EventsPage:
    events = []
    for item in result.get("events") or ():
        record = None
        if isinstance(item.get("transaction"), dict):
            tx = item["transaction"]
            record = _parse_record(tx, unb64(tx.get("id", "")))
        balance = item.get("balance")
        events.append(
            RawEvent(
                kind=str(item.get("type", "")),
                balance=int(balance) if balance is not None else None,
                transaction=record,
            )
        )
    return EventsPage(
        events=tuple(events),
        cursor=result.get("cursor"),
        closed=bool(result.get("closed", False)),
    )


# =========================================================================
# Client
# =========================================================================


@dataclass
class _ConfigCache:
    value: ServiceConfig | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class JsonRpcLedgerClient:
    """JSON-RPC implementation of LedgerRpc.

    Args:
        url: The JSON-RPC endpoint URL.
        transport: Injectable transport. Defaults to HttpxTransport.
        policy: Retry policy for transient failures.
        desired_version: Ledger version the caller would like to be served;
            sent with every legacy request when set.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        url: str,
        transport: JsonRpcTransport | None = None,
        *,
        policy: RetryPolicy | None = None,
        desired_version: int | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._transport = transport or HttpxTransport()
        self._policy = policy or RetryPolicy()
        self._desired_version = desired_version
        self._sleep = sleep
        self._config = _ConfigCache()

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()

    async def _post(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = {"method": method, "params": [params], "id": next(_request_ids)}
        return _result(await self._transport.post_json(self._url, payload))

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return await retry(
            lambda: self._post(method, params),
            policy=self._policy,
            sleep=self._sleep,
            name=method,
        )

    def _legacy_params(self, version: int, **params: Any) -> dict[str, Any]:
        params["version"] = version
        if self._desired_version is not None:
            params["desired_version"] = self._desired_version
        return params

    async def _submit(self, method: str, params: dict[str, Any], id_field: str) -> SubmitResponse:
        attempts = 0

        async def attempt() -> SubmitResponse:
            nonlocal attempts
            attempts += 1
            resp = _parse_submit(await self._post(method, params), id_field)
            if resp.result == "ALREADY_SUBMITTED" and attempts > 1:
                _logger.debug("rpc:%s already_submitted_after_retry attempts=%d", method, attempts)
                return SubmitResponse(tx_id=resp.tx_id, result="OK")
            return resp

        return await retry(attempt, policy=self._policy, sleep=self._sleep, name=method)

    # -----------------------------------------------------------------
    # Legacy ledger
    # -----------------------------------------------------------------

    async def create_account_legacy(self, account: PublicKey, *, version: int) -> None:
        result = await self._call(
            "legacy.account.create",
            self._legacy_params(version, account=account.to_string()),
        )
        err = classify(
            CREATE_ACCOUNT_RESULTS,
            str(result.get("result", "OK")),
            what="create account result",
        )
        if err is not None:
            raise err

    async def get_account_info_legacy(self, account: PublicKey, *, version: int) -> AccountInfo:
        result = await self._call(
            "legacy.account.info",
            self._legacy_params(version, account=account.to_string()),
        )
        return _parse_account_info(result, account)

    async def submit_legacy(
        self,
        blob: bytes,
        invoice_list: InvoiceList | None,
        *,
        version: int,
    ) -> SubmitResponse:
        params = self._legacy_params(version, envelope=b64(blob))
        if invoice_list is not None:
            params["invoice_list"] = invoice_list.to_dict()
        return await self._submit("legacy.tx.submit", params, "hash")

    async def get_transaction_legacy(self, tx_id: bytes, *, version: int) -> TransactionRecord:
        result = await self._call(
            "legacy.tx.get",
            self._legacy_params(version, hash=b64(tx_id)),
        )
        return _parse_record(result, tx_id)

    # -----------------------------------------------------------------
    # Token ledger
    # -----------------------------------------------------------------

    async def get_service_config(self) -> ServiceConfig:
        """Fetch the service config once per client; later calls are cached."""
        async with self._config.lock:
            if self._config.value is None:
                result = await self._call("service.config", {})
                self._config.value = ServiceConfig(
                    subsidizer=_key_or_none(result.get("subsidizer")),
                    token=_key_or_none(result.get("token")),
                    token_program=_key_or_none(result.get("token_program")),
                )
            return self._config.value

    async def get_recent_blockhash(self) -> bytes:
        result = await self._call("blockhash.recent", {})
        return unb64(result["blockhash"])

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        result = await self._call("rent.minimum", {"size": size})
        return int(result["lamports"])

    async def create_account(self, blob: bytes, *, commitment: Commitment) -> str:
        result = await self._call(
            "account.create",
            {"transaction": b64(blob), "commitment": commitment.value},
        )
        return str(result.get("result", "OK"))

    async def get_account_info(self, account: PublicKey, *, commitment: Commitment) -> AccountInfo:
        result = await self._call(
            "account.info",
            {"account": account.to_string(), "commitment": commitment.value},
        )
        return _parse_account_info(result, account)

    async def resolve_token_accounts(self, account: PublicKey) -> list[PublicKey]:
        result = await self._call("account.resolve", {"account": account.to_string()})
        return [PublicKey.from_string(a) for a in result.get("token_accounts") or ()]

    async def submit_transaction(
        self,
        blob: bytes,
        invoice_list: InvoiceList | None,
        *,
        commitment: Commitment,
        dedupe_id: bytes | None = None,
    ) -> SubmitResponse:
        params: dict[str, Any] = {"transaction": b64(blob), "commitment": commitment.value}
        if invoice_list is not None:
            params["invoice_list"] = invoice_list.to_dict()
        if dedupe_id is not None:
            params["dedupe_id"] = b64(dedupe_id)
        return await self._submit("tx.submit", params, "signature")

    async def get_transaction(self, tx_id: bytes, *, commitment: Commitment) -> TransactionRecord:
        result = await self._call(
            "tx.get",
            {"id": b64(tx_id), "commitment": commitment.value},
        )
        return _parse_record(result, tx_id)

    async def request_airdrop(
        self, account: PublicKey, quarks: int, *, commitment: Commitment
    ) -> bytes:
        result = await self._call(
            "airdrop.request",
            {"account": account.to_string(), "quarks": quarks, "commitment": commitment.value},
        )
        err = classify(AIRDROP_RESULTS, str(result.get("result", "OK")), what="airdrop result")
        if err is not None:
            raise err
        return unb64(result.get("signature", ""))

    async def get_events(self, account: PublicKey, cursor: str | None = None) -> EventsPage:
        params: dict[str, Any] = {"account": account.to_string()}
        if cursor is not None:
            params["cursor"] = cursor
        result = await self._call("account.events", params)
        if result.get("result") == "NOT_FOUND":
            raise AccountDoesNotExistError()
        return _parse_events(result)


def _key_or_none(value: Any) -> PublicKey | None:
    return PublicKey.from_string(value) if value else None


async def iter_events(
    rpc: LedgerRpc,
    account: PublicKey,
    *,
    poll_interval: float = 1.0,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> AsyncGenerator[EventsPage, None]:
    """Poll ``rpc.get_events`` until the server closes the stream.

    Empty pages are not yielded; the poller waits ``poll_interval``
    between them.
    """
    cursor: str | None = None
    while True:
        page = await rpc.get_events(account, cursor)
        if page.events:
            yield page
        if page.closed:
            return
        cursor = page.cursor or cursor
        if not page.events:
            await sleep(poll_interval)
