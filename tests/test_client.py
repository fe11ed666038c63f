"""
Tests for the Client version router.

All tests run against FakeLedgerRpc: no network, no sleeping.

Test plan:
- Construction: unsupported ledger versions fail fast, new_client
  refuses rpc + endpoint
- Validation: oversized or empty batches, memo + invoice, invoice
  without app index, partial batch invoices; none reach the network
- Migration: FAILED_PRECONDITION on a legacy call upgrades the client
  and the same operation completes on the token ledger; later calls
  skip the legacy ledger entirely
- Resolution: Preferred resolves sender and destination and resubmits
  exactly once, Exact never resolves, a second absent outcome is raised
- Error precedence: per-operation > transaction > invoice
- Token ledger: NoSubsidizer, caller subsidizer, AlreadySubmitted,
  invoice fingerprint in the memo, balances through resolution
- Legacy ledger: text memo verbatim with no hash, balances, accounts
- Earn batches: success, per-earn errors, invoice errors
- Transactions, events, airdrop routing
- Dedupe: resubmitting an already-submitted payment with the same dedupe
  id is AlreadySubmitted again, and the id reaches the server both times
- Timeout: a stalled call raises TimeoutError; a timeout inside the
  nonce loop or the resolver loop stops it without further attempts
- Strategies: both ledgers satisfy LedgerStrategy; the legacy ledger
  accepts and ignores token-only submit arguments
"""

import asyncio

import pytest
from helpers.fake_rpc import SUBSIDIZER, FakeLedgerRpc, no_sleep

from nexus_pay.client import Client, new_client, payment_outcome
from nexus_pay.config import ClientOptions, Environment
from nexus_pay.errors import (
    AccountDoesNotExistError,
    AccountExistsError,
    AlreadySubmittedError,
    BadNonceError,
    ConfigurationError,
    InsufficientBalanceError,
    InvalidPaymentError,
    InvoiceError,
    NoSubsidizerError,
    RpcError,
    RpcStatus,
    TransactionRejectedError,
    UnexpectedError,
)
from nexus_pay.keys import PrivateKey, PublicKey
from nexus_pay.memo import decode_memo_text, invoice_list_hash
from nexus_pay.models import (
    AccountInfo,
    AccountResolution,
    Commitment,
    Earn,
    EarnBatch,
    EventKind,
    Invoice,
    InvoiceErrorReason,
    InvoiceList,
    LedgerVersion,
    LineItem,
    Payment,
    PaymentType,
    ServiceConfig,
    SubmitTransactionResult,
    TransactionErrors,
    TransactionState,
)
from nexus_pay.retrier import SubmissionRetrier
from nexus_pay.rpc.client import (
    EventsPage,
    RawEvent,
    RawInvoiceError,
    SubmitResponse,
    TransactionRecord,
)
from nexus_pay.signer import sign_token_transaction
from nexus_pay.strategy import LedgerStrategy, LegacyLedgerStrategy, TokenLedgerStrategy
from nexus_pay.tx import plan_token_payment

SENDER = PrivateKey(bytes([1]) * 32)
DEST = PrivateKey(bytes([3]) * 32).public()
SENDER_TOKEN = PrivateKey(bytes([21]) * 32).public()
DEST_TOKEN = PrivateKey(bytes([23]) * 32).public()

INVOICE = Invoice(items=(LineItem(title="Sword", amount=100, sku=b"sword"),))

ABSENT = SubmitResponse(tx_id=b"", result="FAILED", tx_error="INVALID_ACCOUNT")
BAD_NONCE = SubmitResponse(tx_id=b"", result="FAILED", tx_error="BAD_NONCE")


def _token_client(rpc: FakeLedgerRpc, **options: object) -> Client:
    opts: dict[str, object] = {"ledger_version": 4, "max_retries": 1}
    opts.update(options)
    return Client(rpc, options=ClientOptions(**opts), sleep=no_sleep)  # type: ignore[arg-type]


def _legacy_client(rpc: FakeLedgerRpc, **options: object) -> Client:
    opts: dict[str, object] = {"ledger_version": 3, "max_retries": 1}
    opts.update(options)
    rpc.legacy_accounts.setdefault(SENDER.public(), AccountInfo(SENDER.public(), 500, 7))
    return Client(rpc, options=ClientOptions(**opts), sleep=no_sleep)  # type: ignore[arg-type]


def _payment(**overrides: object) -> Payment:
    kwargs: dict[str, object] = {
        "sender": SENDER,
        "destination": DEST,
        "quarks": 100,
        "type": PaymentType.SPEND,
    }
    kwargs.update(overrides)
    return Payment(**kwargs)  # type: ignore[arg-type]


def _batch(n: int, **overrides: object) -> EarnBatch:
    kwargs: dict[str, object] = {
        "sender": SENDER,
        "earns": tuple(Earn(destination=DEST, quarks=i + 1) for i in range(n)),
    }
    kwargs.update(overrides)
    return EarnBatch(**kwargs)  # type: ignore[arg-type]


def _transfer(rpc: FakeLedgerRpc, index: int = -1) -> dict[str, object]:
    tx = rpc.submitted(index)["transaction"]
    transfers = [i for i in tx["instructions"] if i["data"].get("type") == "transfer"]
    data: dict[str, object] = transfers[0]["data"]
    return data


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    @pytest.mark.parametrize("version", [1, 5])
    def test_unsupported_version(self, version: int) -> None:
        with pytest.raises(ConfigurationError):
            Client(FakeLedgerRpc(), options=ClientOptions(ledger_version=version))

    def test_new_client_rejects_rpc_and_endpoint(self) -> None:
        with pytest.raises(ValueError, match="endpoint"):
            new_client("test", rpc=FakeLedgerRpc(), endpoint="http://localhost")

    def test_new_client_with_rpc(self) -> None:
        client = new_client("test", rpc=FakeLedgerRpc(), ledger_version=4)
        assert client.ledger_version == LedgerVersion.TOKEN_V4

    def test_new_client_unknown_environment(self) -> None:
        with pytest.raises(ValueError):
            new_client("staging", rpc=FakeLedgerRpc())


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    async def test_batch_of_sixteen_rejected_before_network(self) -> None:
        rpc = FakeLedgerRpc()
        with pytest.raises(InvalidPaymentError, match="15"):
            await _token_client(rpc).submit_earn_batch(_batch(16))
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self) -> None:
        rpc = FakeLedgerRpc()
        with pytest.raises(InvalidPaymentError):
            await _token_client(rpc).submit_earn_batch(_batch(0))
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_memo_and_invoice_rejected(self) -> None:
        rpc = FakeLedgerRpc()
        with pytest.raises(InvalidPaymentError, match="memo"):
            await _token_client(rpc, app_index=1).submit_payment(
                _payment(memo="x", invoice=INVOICE)
            )
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_invoice_needs_app_index(self) -> None:
        rpc = FakeLedgerRpc()
        with pytest.raises(InvalidPaymentError, match="app index"):
            await _token_client(rpc).submit_payment(_payment(invoice=INVOICE))
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_partial_batch_invoices_rejected(self) -> None:
        rpc = FakeLedgerRpc()
        earns = (Earn(DEST, 1, INVOICE), Earn(DEST, 2))
        with pytest.raises(InvalidPaymentError, match="all or none"):
            await _token_client(rpc, app_index=1).submit_earn_batch(_batch(0, earns=earns))
        assert rpc.calls == []


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class TestMigration:
    @pytest.mark.asyncio
    async def test_payment_continues_on_token_ledger(self) -> None:
        rpc = FakeLedgerRpc(legacy_retired=True)
        client = _legacy_client(rpc)

        tx_id = await client.submit_payment(_payment())

        assert client.ledger_version == LedgerVersion.TOKEN_V4
        assert len(tx_id) == 64
        assert rpc.count("submit_transaction") == 1
        assert rpc.count("submit_legacy") == 0

    @pytest.mark.asyncio
    async def test_later_calls_skip_legacy(self) -> None:
        rpc = FakeLedgerRpc(legacy_retired=True)
        client = _legacy_client(rpc)
        await client.submit_payment(_payment())
        legacy_calls = rpc.count("get_account_info_legacy")

        await client.submit_payment(_payment())

        assert rpc.count("get_account_info_legacy") == legacy_calls
        assert rpc.count("submit_transaction") == 2

    @pytest.mark.asyncio
    async def test_balance_migrates(self) -> None:
        rpc = FakeLedgerRpc(legacy_retired=True)
        rpc.token_accounts[SENDER.public()] = AccountInfo(SENDER.public(), 42)
        client = _legacy_client(rpc)
        assert await client.get_balance(SENDER.public()) == 42
        assert client.ledger_version == LedgerVersion.TOKEN_V4

    @pytest.mark.asyncio
    async def test_create_account_migrates(self) -> None:
        rpc = FakeLedgerRpc(legacy_retired=True)
        client = _legacy_client(rpc)
        await client.create_account(SENDER)
        assert rpc.count("create_account") == 1
        assert client.ledger_version == LedgerVersion.TOKEN_V4

    @pytest.mark.asyncio
    async def test_earn_batch_migrates(self) -> None:
        rpc = FakeLedgerRpc(legacy_retired=True)
        client = _legacy_client(rpc)
        result = await client.submit_earn_batch(_batch(3))
        assert result.succeeded
        assert rpc.count("submit_transaction") == 1

    @pytest.mark.asyncio
    async def test_other_rpc_errors_do_not_migrate(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.legacy_submit_responses = [RpcError(RpcStatus.INVALID_ARGUMENT, "bad")]
        client = _legacy_client(rpc)
        with pytest.raises(RpcError):
            await client.submit_payment(_payment())
        assert client.ledger_version == LedgerVersion.LEGACY_V3


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------


class TestResolution:
    @pytest.mark.asyncio
    async def test_preferred_resubmits_once_with_resolved_accounts(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [ABSENT]
        rpc.resolutions[SENDER.public()] = [[SENDER_TOKEN]]
        rpc.resolutions[DEST] = [[DEST_TOKEN]]

        tx_id = await _token_client(rpc).submit_payment(_payment())

        assert len(tx_id) == 64
        assert rpc.count("submit_transaction") == 2
        transfer = _transfer(rpc)
        assert transfer["source"] == SENDER_TOKEN.to_string()
        assert transfer["destination"] == DEST_TOKEN.to_string()
        assert transfer["owner"] == SENDER.public().to_string()

    @pytest.mark.asyncio
    async def test_exact_never_resolves(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [ABSENT]
        rpc.resolutions[DEST] = [[DEST_TOKEN]]

        with pytest.raises(AccountDoesNotExistError):
            await _token_client(rpc).submit_payment(
                _payment(),
                sender_resolution=AccountResolution.EXACT,
                dest_resolution=AccountResolution.EXACT,
            )
        assert rpc.count("resolve_token_accounts") == 0
        assert rpc.count("submit_transaction") == 1

    @pytest.mark.asyncio
    async def test_second_absent_outcome_raised(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [ABSENT, ABSENT, ABSENT]
        rpc.resolutions[DEST] = [[DEST_TOKEN]]

        with pytest.raises(AccountDoesNotExistError) as exc_info:
            await _token_client(rpc).submit_payment(_payment())
        assert rpc.count("submit_transaction") == 2
        assert exc_info.value.tx_id is not None

    @pytest.mark.asyncio
    async def test_nothing_resolved_no_resubmit(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [ABSENT]
        with pytest.raises(AccountDoesNotExistError):
            await _token_client(rpc).submit_payment(_payment())
        assert rpc.count("submit_transaction") == 1

    @pytest.mark.asyncio
    async def test_batch_destinations_resolved(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [ABSENT]
        rpc.resolutions[DEST] = [[DEST_TOKEN]]

        result = await _token_client(rpc).submit_earn_batch(_batch(2))

        assert result.succeeded
        tx = rpc.submitted()["transaction"]
        dests = [i["data"]["destination"] for i in tx["instructions"]]
        assert dests == [DEST_TOKEN.to_string()] * 2


# ---------------------------------------------------------------------------
# Error precedence
# ---------------------------------------------------------------------------


class TestPrecedence:
    def test_operation_error_beats_tx_error(self) -> None:
        result = SubmitTransactionResult(
            tx_id=b"id",
            errors=TransactionErrors(
                tx_error=BadNonceError(), payment_errors=(InsufficientBalanceError(),)
            ),
            invoice_errors=(InvoiceError(InvoiceErrorReason.ALREADY_PAID),),
        )
        with pytest.raises(InsufficientBalanceError) as exc_info:
            payment_outcome(result, has_invoice=True)
        assert exc_info.value.tx_id == b"id"

    def test_tx_error_beats_invoice_error(self) -> None:
        result = SubmitTransactionResult(
            tx_id=b"id",
            errors=TransactionErrors(tx_error=BadNonceError()),
            invoice_errors=(InvoiceError(InvoiceErrorReason.ALREADY_PAID),),
        )
        with pytest.raises(BadNonceError):
            payment_outcome(result, has_invoice=True)

    def test_invoice_error_raised_last(self) -> None:
        result = SubmitTransactionResult(
            tx_id=b"id", invoice_errors=(InvoiceError(InvoiceErrorReason.WRONG_DESTINATION),)
        )
        with pytest.raises(InvoiceError) as exc_info:
            payment_outcome(result, has_invoice=True)
        assert exc_info.value.reason == InvoiceErrorReason.WRONG_DESTINATION

    def test_invoice_error_without_invoice_is_unexpected(self) -> None:
        result = SubmitTransactionResult(
            tx_id=b"id", invoice_errors=(InvoiceError(InvoiceErrorReason.ALREADY_PAID),)
        )
        with pytest.raises(UnexpectedError):
            payment_outcome(result, has_invoice=False)

    def test_success_returns_tx_id(self) -> None:
        assert payment_outcome(SubmitTransactionResult(tx_id=b"id"), has_invoice=False) == b"id"


# ---------------------------------------------------------------------------
# Token ledger
# ---------------------------------------------------------------------------


class TestTokenLedger:
    @pytest.mark.asyncio
    async def test_no_subsidizer(self) -> None:
        rpc = FakeLedgerRpc(service_config=ServiceConfig())
        with pytest.raises(NoSubsidizerError):
            await _token_client(rpc).submit_payment(_payment())
        assert rpc.count("submit_transaction") == 0

    @pytest.mark.asyncio
    async def test_caller_subsidizer_pays(self) -> None:
        rpc = FakeLedgerRpc(service_config=ServiceConfig())
        caller = PrivateKey(bytes([30]) * 32)
        tx_id = await _token_client(rpc).submit_payment(_payment(), subsidizer=caller)
        assert rpc.submitted()["transaction"]["fee_payer"] == caller.public().to_string()
        assert tx_id != bytes(64)

    @pytest.mark.asyncio
    async def test_already_submitted(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [SubmitResponse(tx_id=b"\x05" * 64, result="ALREADY_SUBMITTED")]
        with pytest.raises(AlreadySubmittedError) as exc_info:
            await _token_client(rpc).submit_payment(_payment())
        assert exc_info.value.tx_id == b"\x05" * 64

    @pytest.mark.asyncio
    async def test_invoice_hash_in_memo(self) -> None:
        rpc = FakeLedgerRpc()
        await _token_client(rpc, app_index=1).submit_payment(_payment(invoice=INVOICE))

        tx = rpc.submitted()["transaction"]
        memo = decode_memo_text(tx["instructions"][0]["data"]["memo"])
        il = InvoiceList(invoices=(INVOICE,))
        assert memo is not None
        assert memo.app_index == 1
        assert memo.invoice_hash == invoice_list_hash(il)
        assert rpc.calls[-1].args["invoice_list"] == il

    @pytest.mark.asyncio
    async def test_balance_through_resolution(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.token_accounts[SENDER_TOKEN] = AccountInfo(SENDER_TOKEN, 75)
        rpc.resolutions[SENDER.public()] = [[SENDER_TOKEN]]
        assert await _token_client(rpc).get_balance(SENDER.public()) == 75

    @pytest.mark.asyncio
    async def test_balance_exact_does_not_resolve(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.resolutions[SENDER.public()] = [[SENDER_TOKEN]]
        with pytest.raises(AccountDoesNotExistError):
            await _token_client(rpc).get_balance(
                SENDER.public(), account_resolution=AccountResolution.EXACT
            )
        assert rpc.count("resolve_token_accounts") == 0

    @pytest.mark.asyncio
    async def test_create_account(self) -> None:
        rpc = FakeLedgerRpc()
        await _token_client(rpc).create_account(SENDER)
        assert rpc.count("get_minimum_balance_for_rent_exemption") == 1
        assert len(rpc.submitted()["transaction"]["instructions"]) == 3

    @pytest.mark.asyncio
    async def test_create_existing_account(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.create_results = ["EXISTS"]
        with pytest.raises(AccountExistsError):
            await _token_client(rpc).create_account(SENDER)

    @pytest.mark.asyncio
    async def test_dedupe_id_reaches_server(self) -> None:
        rpc = FakeLedgerRpc()
        await _token_client(rpc).submit_payment(_payment(dedupe_id=b"dedupe"))
        assert rpc.calls[-1].args["dedupe_id"] == b"dedupe"

    @pytest.mark.asyncio
    async def test_resubmitted_dedupe_stays_already_submitted(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [
            SubmitResponse(tx_id=b"\x05" * 64, result="ALREADY_SUBMITTED"),
            SubmitResponse(tx_id=b"\x05" * 64, result="ALREADY_SUBMITTED"),
        ]
        client = _token_client(rpc)
        payment = _payment(dedupe_id=b"order-17")

        for _ in range(2):
            with pytest.raises(AlreadySubmittedError):
                await client.submit_payment(payment)

        dedupe_ids = [c.args["dedupe_id"] for c in rpc.calls if c.method == "submit_transaction"]
        assert dedupe_ids == [b"order-17", b"order-17"]

    @pytest.mark.asyncio
    async def test_airdrop(self) -> None:
        rpc = FakeLedgerRpc()
        sig = await _token_client(rpc).request_airdrop(SENDER.public(), 10)
        assert len(sig) == 64

    @pytest.mark.asyncio
    async def test_resolve_token_accounts(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.resolutions[SENDER.public()] = [[SENDER_TOKEN]]
        client = _token_client(rpc)
        assert await client.resolve_token_accounts(SENDER.public()) == [SENDER_TOKEN]


# ---------------------------------------------------------------------------
# Legacy ledger
# ---------------------------------------------------------------------------


class TestLegacyLedger:
    @pytest.mark.asyncio
    async def test_payment(self) -> None:
        rpc = FakeLedgerRpc()
        tx_id = await _legacy_client(rpc).submit_payment(_payment())
        assert len(tx_id) == 32
        assert rpc.submitted()["envelope"]["sequence"] == 8

    @pytest.mark.asyncio
    async def test_text_memo_verbatim_no_hash(self) -> None:
        rpc = FakeLedgerRpc()
        await _legacy_client(rpc, app_index=1).submit_payment(_payment(memo="1-test"))
        memo = rpc.submitted()["envelope"]["memo"]
        assert memo == {"type": "text", "text": "1-test"}

    @pytest.mark.asyncio
    async def test_operation_error_raised_with_tx_id(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.legacy_submit_responses = [
            SubmitResponse(
                tx_id=b"", result="FAILED", result_code="txFAILED", op_codes=("opUNDERFUNDED",)
            )
        ]
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await _legacy_client(rpc).submit_payment(_payment())
        assert exc_info.value.tx_id is not None
        assert len(exc_info.value.tx_id) == 32

    @pytest.mark.asyncio
    async def test_balance(self) -> None:
        rpc = FakeLedgerRpc()
        assert await _legacy_client(rpc).get_balance(SENDER.public()) == 500

    @pytest.mark.asyncio
    async def test_create_account_twice(self) -> None:
        rpc = FakeLedgerRpc()
        client = _legacy_client(rpc)
        key = PrivateKey(bytes([40]) * 32)
        await client.create_account(key)
        with pytest.raises(AccountExistsError):
            await client.create_account(key)

    @pytest.mark.asyncio
    async def test_token_only_operations_refused(self) -> None:
        client = _legacy_client(FakeLedgerRpc())
        with pytest.raises(ConfigurationError):
            await client.request_airdrop(SENDER.public(), 1)
        with pytest.raises(ConfigurationError):
            await client.resolve_token_accounts(SENDER.public())


# ---------------------------------------------------------------------------
# Earn batches
# ---------------------------------------------------------------------------


class TestEarnBatch:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        rpc = FakeLedgerRpc()
        result = await _token_client(rpc).submit_earn_batch(_batch(15))
        assert result.succeeded
        assert result.earn_errors == ()
        assert len(rpc.submitted()["transaction"]["instructions"]) == 15

    @pytest.mark.asyncio
    async def test_per_earn_error(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [
            SubmitResponse(
                tx_id=b"", result="FAILED", tx_error="INSUFFICIENT_FUNDS", instruction_index=1
            )
        ]
        result = await _token_client(rpc).submit_earn_batch(_batch(3))
        assert isinstance(result.tx_error, InsufficientBalanceError)
        assert [e.earn_index for e in result.earn_errors] == [1]

    @pytest.mark.asyncio
    async def test_invoice_errors(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.submit_responses = [
            SubmitResponse(
                tx_id=b"",
                result="INVOICE_ERROR",
                invoice_errors=(RawInvoiceError(op_index=1, reason="SKU_NOT_FOUND"),),
            )
        ]
        earns = (Earn(DEST, 1, INVOICE), Earn(DEST, 2, INVOICE))
        result = await _token_client(rpc, app_index=1).submit_earn_batch(_batch(0, earns=earns))

        assert isinstance(result.tx_error, TransactionRejectedError)
        assert len(result.earn_errors) == 1
        assert result.earn_errors[0].earn_index == 1
        assert isinstance(result.earn_errors[0].error, InvoiceError)

    @pytest.mark.asyncio
    async def test_legacy_batch(self) -> None:
        rpc = FakeLedgerRpc()
        result = await _legacy_client(rpc).submit_earn_batch(_batch(4))
        assert result.succeeded
        assert len(rpc.submitted()["envelope"]["operations"]) == 4


# ---------------------------------------------------------------------------
# Transactions and events
# ---------------------------------------------------------------------------


class TestTransactions:
    @pytest.mark.asyncio
    async def test_token_transaction_decoded(self) -> None:
        rpc = FakeLedgerRpc()
        plan = plan_token_payment(
            _payment(), app_index=2, service_subsidizer=SUBSIDIZER.public()
        )
        signed = sign_token_transaction(plan.transaction.with_blockhash(bytes(32)), plan.signers)
        tx_id = b"\x09" * 64
        rpc.transactions[tx_id] = TransactionRecord(
            tx_id=tx_id, state=TransactionState.SUCCESS, blob=signed.blob()
        )

        data = await _token_client(rpc).get_transaction(tx_id)

        assert data.state == TransactionState.SUCCESS
        assert len(data.payments) == 1
        assert data.payments[0].quarks == 100
        assert data.payments[0].type == PaymentType.SPEND

    @pytest.mark.asyncio
    async def test_unknown_transaction(self) -> None:
        data = await _token_client(FakeLedgerRpc()).get_transaction(b"\x00" * 64)
        assert data.state == TransactionState.UNKNOWN
        assert data.payments == ()


class TestEvents:
    @pytest.mark.asyncio
    async def test_batches_until_closed(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.event_pages = [
            EventsPage(events=(RawEvent(kind="balance_update", balance=5),), cursor="c1"),
            EventsPage(),
            EventsPage(events=(RawEvent(kind="balance_update", balance=9),), cursor="c2"),
            EventsPage(closed=True),
        ]
        client = _token_client(rpc)

        balances = [
            e.balance
            async for batch in client.get_events(SENDER.public())
            for e in batch.events
            if e.kind == EventKind.BALANCE_UPDATE
        ]

        assert balances == [5, 9]
        cursors = [c.args["cursor"] for c in rpc.calls if c.method == "get_events"]
        assert cursors == [None, "c1", "c1", "c2"]

    @pytest.mark.asyncio
    async def test_unknown_event_kind(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.event_pages = [EventsPage(events=(RawEvent(kind="mystery"),))]
        with pytest.raises(UnexpectedError):
            async for _ in _token_client(rpc).get_events(SENDER.public()):
                pass

    @pytest.mark.asyncio
    async def test_transaction_event_without_record(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.event_pages = [EventsPage(events=(RawEvent(kind="transaction"),))]
        with pytest.raises(UnexpectedError, match="without a transaction"):
            async for _ in _token_client(rpc).get_events(SENDER.public()):
                pass


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------


class StalledRpc(FakeLedgerRpc):
    async def get_service_config(self) -> ServiceConfig:
        await asyncio.sleep(10)
        return await super().get_service_config()


class SlowSecondBlockhashRpc(FakeLedgerRpc):
    async def get_recent_blockhash(self) -> bytes:
        blockhash = await super().get_recent_blockhash()
        if self.count("get_recent_blockhash") > 1:
            await asyncio.sleep(10)
        return blockhash


class SlowSecondResolveRpc(FakeLedgerRpc):
    async def resolve_token_accounts(self, account: PublicKey) -> list[PublicKey]:
        answer = await super().resolve_token_accounts(account)
        if self.count("resolve_token_accounts") > 1:
            await asyncio.sleep(10)
        return answer


class TestTimeout:
    @pytest.mark.asyncio
    async def test_stalled_call_times_out(self) -> None:
        rpc = StalledRpc()
        with pytest.raises(TimeoutError):
            await _token_client(rpc).submit_payment(_payment(), timeout=0.05)
        assert rpc.count("submit_transaction") == 0

    @pytest.mark.asyncio
    async def test_timeout_stops_nonce_loop(self) -> None:
        rpc = SlowSecondBlockhashRpc()
        rpc.submit_responses = [BAD_NONCE] * 5
        client = _token_client(rpc, max_nonce_retries=5)
        with pytest.raises(TimeoutError):
            await client.submit_payment(_payment(), timeout=0.05)
        assert rpc.count("submit_transaction") == 1

    @pytest.mark.asyncio
    async def test_timeout_stops_resolver_loop(self) -> None:
        rpc = SlowSecondResolveRpc()
        client = _token_client(rpc, max_retries=5)
        with pytest.raises(TimeoutError):
            await client.resolve_token_accounts(SENDER.public(), timeout=0.05)
        assert rpc.count("resolve_token_accounts") == 2


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    def _strategies(self, rpc: FakeLedgerRpc) -> list[LedgerStrategy]:
        retrier = SubmissionRetrier(rpc)
        return [
            LegacyLedgerStrategy(
                rpc, retrier, version=LedgerVersion.LEGACY_V3, environment=Environment.TEST
            ),
            TokenLedgerStrategy(rpc, retrier),
        ]

    def test_both_ledgers_share_one_interface(self) -> None:
        for strategy in self._strategies(FakeLedgerRpc()):
            assert isinstance(strategy, LedgerStrategy)

    @pytest.mark.asyncio
    async def test_legacy_ignores_token_only_arguments(self) -> None:
        rpc = FakeLedgerRpc()
        rpc.legacy_accounts[SENDER.public()] = AccountInfo(SENDER.public(), 500, 7)
        legacy = self._strategies(rpc)[0]

        result = await legacy.submit_payment(
            _payment(),
            commitment=Commitment.MAX,
            subsidizer=PrivateKey(bytes([30]) * 32),
            transfer_source=SENDER_TOKEN,
        )

        assert result.errors.tx_error is None
        assert rpc.count("submit_legacy") == 1
        assert rpc.count("get_service_config") == 0
