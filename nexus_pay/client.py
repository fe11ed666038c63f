"""
Payment client: the ledger version router.

Client is the single entry point callers use. It owns the only mutable
shared state (the ledger version cell and the token-account cache) and
routes every operation to one of two ledger strategies.

Routing:
    1. The active version selects the strategy. Versions outside 2..4 are
       a ConfigurationError when the client is built.
    2. Payments and batches are validated before any network call.
    3. Legacy operations that fail with FAILED_PRECONDITION upgrade the
       version to the token ledger (once, idempotently) and the same
       logical operation continues on the token ledger in the same call.
    4. On the token ledger, an AccountDoesNotExist outcome with Preferred
       resolution resolves the absent parties' token accounts and
       resubmits exactly once with the first resolved account(s)
       substituted. Nothing is resolved under Exact resolution.

Error precedence for submit_payment (one error surfaces per call):
    transport/RPC error > per-operation error > transaction error >
    invoice error.

Every operation takes ``timeout`` (seconds). When it elapses the call is
abandoned mid-retry and TimeoutError is raised. Cancellation of the
calling task propagates unchanged.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

from nexus_pay.config import (
    ClientOptions,
    Environment,
    default_endpoint,
)
from nexus_pay.errors import (
    AccountDoesNotExistError,
    ConfigurationError,
    InvalidPaymentError,
    PaymentError,
    RpcError,
    TransactionRejectedError,
    UnexpectedError,
)
from nexus_pay.keys import PrivateKey, PublicKey
from nexus_pay.logging_setup import get_logger
from nexus_pay.models import (
    MAX_BATCH_SIZE,
    AccountEvent,
    AccountResolution,
    Commitment,
    EarnBatch,
    EarnBatchResult,
    EarnError,
    EventKind,
    EventsBatch,
    LedgerVersion,
    Payment,
    SubmitTransactionResult,
    TransactionData,
)
from nexus_pay.resolver import AccountResolver, TokenAccountCache
from nexus_pay.retrier import SubmissionRetrier
from nexus_pay.rpc.client import JsonRpcLedgerClient, LedgerRpc, RawEvent, iter_events
from nexus_pay.rpc.retry import RetryPolicy
from nexus_pay.rpc.transport import (
    APP_INDEX_HEADER,
    DESIRED_VERSION_HEADER,
    HttpxTransport,
    JsonRpcTransport,
)
from nexus_pay.strategy import LedgerStrategy, LegacyLedgerStrategy, TokenLedgerStrategy
from nexus_pay.version import LedgerVersionCell

T = TypeVar("T")

_logger = get_logger("client")

# Returned by _try_legacy when the legacy ledger has been retired.
_MIGRATED: Any = object()


# =========================================================================
# Validation (pure, before any network call)
# =========================================================================


def validate_payment(payment: Payment, app_index: int) -> None:
    """Raises InvalidPaymentError for a payment that cannot be submitted."""
    if payment.invoice is not None and payment.memo:
        raise InvalidPaymentError("cannot have invoice set when memo is set")
    if payment.invoice is not None and app_index == 0:
        raise InvalidPaymentError("cannot submit payment with invoices without an app index")


def validate_earn_batch(batch: EarnBatch, app_index: int) -> None:
    """Raises InvalidPaymentError for a batch that cannot be submitted."""
    if not batch.earns:
        raise InvalidPaymentError("earn batch must contain at least 1 earn")
    if len(batch.earns) > MAX_BATCH_SIZE:
        raise InvalidPaymentError(
            f"earn batch must not contain more than {MAX_BATCH_SIZE} earns"
        )

    with_invoice = [e.invoice is not None for e in batch.earns]
    if batch.memo:
        if any(with_invoice):
            raise InvalidPaymentError("cannot have invoice set when memo is set")
        return
    if with_invoice[0] and app_index == 0:
        raise InvalidPaymentError("cannot submit earn batch with invoices without an app index")
    if any(with_invoice) and not all(with_invoice):
        raise InvalidPaymentError("either all or none of the earns should have an invoice set")


# =========================================================================
# Result mapping
# =========================================================================


def _tagged(err: PaymentError, tx_id: bytes) -> PaymentError:
    err.tx_id = tx_id
    return err


def payment_outcome(result: SubmitTransactionResult, *, has_invoice: bool) -> bytes:
    """Apply the error precedence to a single-payment result.

    Returns:
        The transaction ID on success.

    Raises:
        PaymentError: The highest-precedence error, with ``tx_id`` set.
    """
    payment_errors = [e for e in result.errors.payment_errors if e is not None]
    if payment_errors:
        if len(result.errors.payment_errors) != 1:
            raise _tagged(
                UnexpectedError(
                    "invalid number of payment errors: expected 0 or 1, got "
                    f"{len(result.errors.payment_errors)}"
                ),
                result.tx_id,
            )
        raise _tagged(payment_errors[0], result.tx_id)
    if result.errors.tx_error is not None:
        raise _tagged(result.errors.tx_error, result.tx_id)
    if result.invoice_errors:
        if not has_invoice:
            raise _tagged(
                UnexpectedError("invoice errors on a payment without an invoice"), result.tx_id
            )
        if len(result.invoice_errors) != 1:
            raise _tagged(
                UnexpectedError(
                    "invalid number of invoice errors: expected 0 or 1, got "
                    f"{len(result.invoice_errors)}"
                ),
                result.tx_id,
            )
        raise _tagged(result.invoice_errors[0], result.tx_id)
    return result.tx_id


def earn_batch_outcome(result: SubmitTransactionResult, *, has_invoices: bool) -> EarnBatchResult:
    """Fold a batch submission result into an EarnBatchResult."""
    if result.errors.tx_error is not None:
        return EarnBatchResult(
            tx_id=result.tx_id,
            tx_error=result.errors.tx_error,
            earn_errors=tuple(
                EarnError(earn_index=i, error=e)
                for i, e in enumerate(result.errors.payment_errors)
                if e is not None
            ),
        )
    if result.invoice_errors:
        if not has_invoices:
            raise _tagged(
                UnexpectedError("invoice errors on a batch without invoices"), result.tx_id
            )
        return EarnBatchResult(
            tx_id=result.tx_id,
            tx_error=TransactionRejectedError(),
            earn_errors=tuple(
                EarnError(earn_index=e.op_index, error=e) for e in result.invoice_errors
            ),
        )
    return EarnBatchResult(tx_id=result.tx_id)


def _is_absent(result: SubmitTransactionResult) -> bool:
    return isinstance(result.errors.tx_error, AccountDoesNotExistError)


# =========================================================================
# Client
# =========================================================================


class Client:
    """Async payment client for the dual ledger.

    Args:
        rpc: Ledger RPC implementation.
        environment: Selects passphrases and the v2 issuer.
        options: Client tunables.
        clock: Monotonic clock for the token-account cache.
        sleep: Awaitable sleep used by event polling.

    Raises:
        ConfigurationError: If ``options.ledger_version`` is not 2, 3 or 4.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        *,
        environment: Environment = Environment.TEST,
        options: ClientOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._options = options or ClientOptions()
        self._rpc = rpc
        self._sleep = sleep
        self._version = LedgerVersionCell(self._options.validated_version())

        retrier = SubmissionRetrier(
            rpc,
            max_nonce_retries=self._options.max_nonce_retries,
            whitelist_key=self._options.whitelist_key,
        )
        self._resolver = AccountResolver(
            rpc,
            TokenAccountCache(self._options.cache_size, self._options.cache_ttl, clock),
            max_retries=self._options.max_retries,
        )
        self._token: TokenLedgerStrategy = TokenLedgerStrategy(
            rpc, retrier, app_index=self._options.app_index
        )
        self._legacy: dict[LedgerVersion, LedgerStrategy] = {
            v: LegacyLedgerStrategy(
                rpc,
                retrier,
                version=v,
                environment=environment,
                app_index=self._options.app_index,
            )
            for v in (LedgerVersion.LEGACY_V2, LedgerVersion.LEGACY_V3)
        }

    @property
    def ledger_version(self) -> LedgerVersion:
        return self._version.get()

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def resolver(self) -> AccountResolver:
        return self._resolver

    async def aclose(self) -> None:
        close = getattr(self._rpc, "aclose", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -----------------------------------------------------------------
    # Routing helpers
    # -----------------------------------------------------------------

    def _legacy_strategy(self) -> LedgerStrategy | None:
        return self._legacy.get(self._version.get())

    async def _try_legacy(self, call: Callable[[LedgerStrategy], Awaitable[T]]) -> T:
        """Run ``call`` on the legacy strategy, if one is active.

        Returns _MIGRATED when the client is (or has just become) a token
        ledger client.
        """
        strategy = self._legacy_strategy()
        if strategy is None:
            return _MIGRATED
        try:
            return await call(strategy)
        except RpcError as e:
            if not e.ledger_migrated:
                raise
        self._version.upgrade()
        return _MIGRATED

    def _require_token(self, what: str) -> None:
        if self._version.get() != LedgerVersion.TOKEN_V4:
            raise ConfigurationError(f"{what} is only available on the token ledger")

    def _commitment(self, commitment: Commitment | None) -> Commitment:
        return commitment or self._options.default_commitment

    @staticmethod
    async def _bounded(coro: Awaitable[T], timeout: float | None) -> T:
        if timeout is None:
            return await coro
        async with asyncio.timeout(timeout):
            return await coro

    # -----------------------------------------------------------------
    # Accounts
    # -----------------------------------------------------------------

    async def create_account(
        self,
        key: PrivateKey,
        *,
        commitment: Commitment | None = None,
        subsidizer: PrivateKey | None = None,
        timeout: float | None = None,
    ) -> None:
        """Create an account for ``key``.

        Raises:
            AccountExistsError: The account already exists.
            PayerRequiredError: The service refused to fund it.
            NoSubsidizerError: No subsidizer is available (token ledger).
        """
        await self._bounded(self._create_account(key, commitment, subsidizer), timeout)

    async def _create_account(
        self,
        key: PrivateKey,
        commitment: Commitment | None,
        subsidizer: PrivateKey | None,
    ) -> None:
        commitment = self._commitment(commitment)
        done = await self._try_legacy(
            lambda s: s.create_account(key, commitment=commitment)
        )
        if done is not _MIGRATED:
            return
        await self._token.create_account(key, commitment=commitment, subsidizer=subsidizer)

    async def get_balance(
        self,
        account: PublicKey,
        *,
        commitment: Commitment | None = None,
        account_resolution: AccountResolution = AccountResolution.PREFERRED,
        timeout: float | None = None,
    ) -> int:
        """Balance of ``account`` in quarks.

        Raises:
            AccountDoesNotExistError: No account (or token account) exists.
        """
        return await self._bounded(
            self._get_balance(account, self._commitment(commitment), account_resolution),
            timeout,
        )

    async def _get_balance(
        self,
        account: PublicKey,
        commitment: Commitment,
        resolution: AccountResolution,
    ) -> int:
        info = await self._try_legacy(
            lambda s: s.get_account_info(account, commitment=commitment)
        )
        if info is not _MIGRATED:
            return info.balance

        try:
            info = await self._token.get_account_info(account, commitment=commitment)
        except AccountDoesNotExistError:
            if resolution != AccountResolution.PREFERRED:
                raise
            accounts = await self._resolver.resolve(account)
            if not accounts:
                raise
            info = await self._token.get_account_info(accounts[0], commitment=commitment)
        return info.balance

    async def resolve_token_accounts(
        self,
        account: PublicKey,
        *,
        timeout: float | None = None,
    ) -> list[PublicKey]:
        """Token accounts owned by ``account`` (token ledger only)."""
        self._require_token("resolve_token_accounts")
        return await self._bounded(self._resolver.resolve(account), timeout)

    async def request_airdrop(
        self,
        account: PublicKey,
        quarks: int,
        *,
        commitment: Commitment | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Request test funds for ``account`` (token ledger only).

        Raises:
            AccountDoesNotExistError: The account does not exist.
            InsufficientBalanceError: ``quarks`` is above the per-call cap.
        """
        self._require_token("request_airdrop")
        return await self._bounded(
            self._token.request_airdrop(account, quarks, commitment=self._commitment(commitment)),
            timeout,
        )

    # -----------------------------------------------------------------
    # Transactions
    # -----------------------------------------------------------------

    async def get_transaction(
        self,
        tx_id: bytes,
        *,
        commitment: Commitment | None = None,
        timeout: float | None = None,
    ) -> TransactionData:
        """Look up a transaction; unknown IDs yield state UNKNOWN."""
        return await self._bounded(
            self._get_transaction(tx_id, self._commitment(commitment)), timeout
        )

    async def _get_transaction(self, tx_id: bytes, commitment: Commitment) -> TransactionData:
        data = await self._try_legacy(lambda s: s.get_transaction(tx_id, commitment=commitment))
        if data is not _MIGRATED:
            return data
        return await self._token.get_transaction(tx_id, commitment=commitment)

    async def submit_payment(
        self,
        payment: Payment,
        *,
        commitment: Commitment | None = None,
        sender_resolution: AccountResolution = AccountResolution.PREFERRED,
        dest_resolution: AccountResolution = AccountResolution.PREFERRED,
        subsidizer: PrivateKey | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Submit a single payment.

        Returns:
            The transaction ID.

        Raises:
            InvalidPaymentError: The payment is malformed (no network call
                was made).
            PaymentError: The submission failed; ``exc.tx_id`` holds the
                transaction ID when one was produced.
            RpcError: Transport failure after retries.
        """
        validate_payment(payment, self._options.app_index)
        result = await self._bounded(
            self._submit_payment(
                payment,
                self._commitment(commitment),
                sender_resolution,
                dest_resolution,
                subsidizer,
            ),
            timeout,
        )
        return payment_outcome(result, has_invoice=payment.invoice is not None)

    async def _submit_payment(
        self,
        payment: Payment,
        commitment: Commitment,
        sender_resolution: AccountResolution,
        dest_resolution: AccountResolution,
        subsidizer: PrivateKey | None,
    ) -> SubmitTransactionResult:
        result = await self._try_legacy(
            lambda s: s.submit_payment(payment, commitment=commitment)
        )
        if result is not _MIGRATED:
            return result

        result = await self._token.submit_payment(
            payment, commitment=commitment, subsidizer=subsidizer
        )
        if not _is_absent(result):
            return result

        transfer_source: PublicKey | None = None
        resubmit = False
        if sender_resolution == AccountResolution.PREFERRED:
            accounts = await self._resolver.resolve(payment.sender.public())
            if accounts:
                transfer_source = accounts[0]
                resubmit = True
        if dest_resolution == AccountResolution.PREFERRED:
            accounts = await self._resolver.resolve(payment.destination)
            if accounts:
                payment = replace(payment, destination=accounts[0])
                resubmit = True

        if not resubmit:
            return result

        _logger.info(
            "client:resubmit_resolved source=%s destination=%s",
            transfer_source.to_string() if transfer_source else "-",
            payment.destination.to_string(),
        )
        return await self._token.submit_payment(
            payment,
            commitment=commitment,
            subsidizer=subsidizer,
            transfer_source=transfer_source,
        )

    async def submit_earn_batch(
        self,
        batch: EarnBatch,
        *,
        commitment: Commitment | None = None,
        sender_resolution: AccountResolution = AccountResolution.PREFERRED,
        dest_resolution: AccountResolution = AccountResolution.PREFERRED,
        subsidizer: PrivateKey | None = None,
        timeout: float | None = None,
    ) -> EarnBatchResult:
        """Submit up to MAX_BATCH_SIZE earns in one transaction.

        Transaction-level failures are reported in the result, not raised.

        Raises:
            InvalidPaymentError: The batch is malformed (no network call
                was made).
            PaymentError: Terminal submit outcomes (already submitted,
                rejected, payer required, no subsidizer).
            RpcError: Transport failure after retries.
        """
        validate_earn_batch(batch, self._options.app_index)
        result = await self._bounded(
            self._submit_earn_batch(
                batch,
                self._commitment(commitment),
                sender_resolution,
                dest_resolution,
                subsidizer,
            ),
            timeout,
        )
        has_invoices = not batch.memo and any(e.invoice is not None for e in batch.earns)
        return earn_batch_outcome(result, has_invoices=has_invoices)

    async def _submit_earn_batch(
        self,
        batch: EarnBatch,
        commitment: Commitment,
        sender_resolution: AccountResolution,
        dest_resolution: AccountResolution,
        subsidizer: PrivateKey | None,
    ) -> SubmitTransactionResult:
        result = await self._try_legacy(
            lambda s: s.submit_earn_batch(batch, commitment=commitment)
        )
        if result is not _MIGRATED:
            return result

        result = await self._token.submit_earn_batch(
            batch, commitment=commitment, subsidizer=subsidizer
        )
        if not _is_absent(result):
            return result

        transfer_source: PublicKey | None = None
        resubmit = False
        if sender_resolution == AccountResolution.PREFERRED:
            accounts = await self._resolver.resolve(batch.sender.public())
            if accounts:
                transfer_source = accounts[0]
                resubmit = True
        if dest_resolution == AccountResolution.PREFERRED:
            earns = list(batch.earns)
            for i, earn in enumerate(earns):
                accounts = await self._resolver.resolve(earn.destination)
                if accounts:
                    earns[i] = replace(earn, destination=accounts[0])
                    resubmit = True
            batch = replace(batch, earns=tuple(earns))

        if not resubmit:
            return result

        _logger.info("client:resubmit_resolved_batch earns=%d", len(batch.earns))
        return await self._token.submit_earn_batch(
            batch,
            commitment=commitment,
            subsidizer=subsidizer,
            transfer_source=transfer_source,
        )

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    async def get_events(
        self,
        account: PublicKey,
        *,
        poll_interval: float = 1.0,
        timeout: float | None = None,
    ) -> AsyncIterator[EventsBatch]:
        """Stream events for ``account`` until the server closes the stream.

        ``timeout`` bounds each wait for the next batch.

        Raises:
            AccountDoesNotExistError: The account is unknown.
        """
        self._require_token("get_events")
        pages = iter_events(self._rpc, account, poll_interval=poll_interval, sleep=self._sleep)
        try:
            while True:
                try:
                    page = await self._bounded(anext(pages), timeout)
                except StopAsyncIteration:
                    return
                yield EventsBatch(events=tuple(self._event(account, e) for e in page.events))
        finally:
            await pages.aclose()

    def _event(self, account: PublicKey, raw: RawEvent) -> AccountEvent:
        if raw.kind == EventKind.TRANSACTION:
            if raw.transaction is None:
                raise UnexpectedError("transaction event without a transaction")
            return AccountEvent(
                kind=EventKind.TRANSACTION,
                account=account,
                transaction=self._token.transaction_data(raw.transaction),
            )
        if raw.kind == EventKind.BALANCE_UPDATE:
            return AccountEvent(kind=EventKind.BALANCE_UPDATE, account=account, balance=raw.balance)
        raise UnexpectedError(f"unrecognized event type: {raw.kind!r}")


# =========================================================================
# Factory
# =========================================================================


def new_client(
    environment: Environment | str,
    *,
    rpc: LedgerRpc | None = None,
    transport: JsonRpcTransport | None = None,
    **options: Any,
) -> Client:
    """Build a Client for ``environment``.

    Args:
        environment: "test" or "prod".
        rpc: Pre-built LedgerRpc. Excludes ``endpoint``.
        transport: Transport for the default JSON-RPC client.
        **options: ClientOptions fields.

    Raises:
        ValueError: Unknown environment, invalid options, or both ``rpc``
            and ``endpoint`` given.
        ConfigurationError: Unsupported ledger version.
    """
    env = Environment(environment)
    opts = ClientOptions(**options)
    if rpc is not None and opts.endpoint is not None:
        raise ValueError("rpc and endpoint cannot both be set")

    if rpc is None:
        headers = {APP_INDEX_HEADER: str(opts.app_index)}
        if opts.desired_ledger_version is not None:
            headers[DESIRED_VERSION_HEADER] = str(opts.desired_ledger_version)
        rpc = JsonRpcLedgerClient(
            opts.endpoint or default_endpoint(env),
            transport or HttpxTransport(headers=headers),
            policy=RetryPolicy(opts.max_retries, opts.min_delay, opts.max_delay),
            desired_version=opts.desired_ledger_version,
        )
    return Client(rpc, environment=env, options=opts)
