"""
Ledger strategies.

Exactly two implementations of one capability set, selected by the
router from the active ledger version:

    LegacyLedgerStrategy   versions 2 and 3 (sequence numbers, envelopes)
    TokenLedgerStrategy    version 4 (token accounts, subsidizer, blockhash)

Each strategy assembles, signs and submits, and decodes stored
transactions. Neither knows about version upgrades or account
resolution; those belong to the router.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from nexus_pay.config import Environment, network_passphrase, v2_issuer
from nexus_pay.errors import (
    NoSubsidizerError,
    UnexpectedError,
    errors_from_legacy_result,
    errors_from_token_error,
)
from nexus_pay.keys import PrivateKey, PublicKey, derive_token_account
from nexus_pay.logging_setup import get_logger
from nexus_pay.models import (
    AccountInfo,
    Commitment,
    EarnBatch,
    LedgerVersion,
    Payment,
    ServiceConfig,
    SubmitTransactionResult,
    TransactionData,
)
from nexus_pay.retrier import SubmissionRetrier
from nexus_pay.rpc.client import LedgerRpc, TransactionRecord
from nexus_pay.signer import SignedLegacyEnvelope, SignedTokenTransaction
from nexus_pay.tx import (
    TOKEN_ACCOUNT_SIZE,
    payments_from_envelope,
    payments_from_token_transaction,
    plan_create_account,
    plan_legacy_earn_batch,
    plan_legacy_payment,
    plan_token_earn_batch,
    plan_token_payment,
)

_logger = get_logger("strategy")


@runtime_checkable
class LedgerStrategy(Protocol):
    """Operations the router dispatches to the active ledger."""

    version: LedgerVersion

    async def create_account(
        self,
        key: PrivateKey,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
    ) -> None: ...

    async def get_account_info(
        self, account: PublicKey, *, commitment: Commitment
    ) -> AccountInfo: ...

    async def submit_payment(
        self,
        payment: Payment,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult: ...

    async def submit_earn_batch(
        self,
        batch: EarnBatch,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult: ...

    async def get_transaction(
        self, tx_id: bytes, *, commitment: Commitment
    ) -> TransactionData: ...

    def transaction_data(self, record: TransactionRecord) -> TransactionData: ...


# =========================================================================
# Legacy
# =========================================================================


class LegacyLedgerStrategy:
    """Sequence-number ledger (versions 2 and 3)."""

    def __init__(
        self,
        rpc: LedgerRpc,
        retrier: SubmissionRetrier,
        *,
        version: LedgerVersion,
        environment: Environment,
        app_index: int = 0,
    ) -> None:
        if not version.is_legacy:
            raise ValueError(f"not a legacy ledger version: {version}")
        self.version = version
        self._rpc = rpc
        self._retrier = retrier
        self._app_index = app_index
        self._passphrase = network_passphrase(environment, version)
        self._issuer = v2_issuer(environment) if version == LedgerVersion.LEGACY_V2 else None

    async def create_account(
        self,
        key: PrivateKey,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
    ) -> None:
        await self._rpc.create_account_legacy(key.public(), version=self.version)

    async def get_account_info(self, account: PublicKey, *, commitment: Commitment) -> AccountInfo:
        return await self._rpc.get_account_info_legacy(account, version=self.version)

    async def submit_payment(
        self,
        payment: Payment,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult:
        """Submit on the sequence-number ledger.

        ``commitment``, ``subsidizer`` and ``transfer_source`` have no
        legacy counterpart and are ignored.
        """
        plan = plan_legacy_payment(
            payment, version=self.version, app_index=self._app_index, issuer=self._issuer
        )
        return await self._retrier.submit_legacy(
            plan, version=self.version, passphrase=self._passphrase
        )

    async def submit_earn_batch(
        self,
        batch: EarnBatch,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult:
        plan = plan_legacy_earn_batch(
            batch, version=self.version, app_index=self._app_index, issuer=self._issuer
        )
        return await self._retrier.submit_legacy(
            plan, version=self.version, passphrase=self._passphrase
        )

    async def get_transaction(self, tx_id: bytes, *, commitment: Commitment) -> TransactionData:
        record = await self._rpc.get_transaction_legacy(tx_id, version=self.version)
        return self.transaction_data(record)

    def transaction_data(self, record: TransactionRecord) -> TransactionData:
        if record.blob is None:
            return TransactionData(tx_id=record.tx_id, state=record.state)

        try:
            signed = SignedLegacyEnvelope.from_blob(record.blob, self._passphrase)
        except ValueError as e:
            raise UnexpectedError(f"undecodable legacy transaction: {e}") from e

        errors = None
        if record.result_code is not None:
            errors = errors_from_legacy_result(record.result_code, record.op_codes)
        return TransactionData(
            tx_id=record.tx_id,
            state=record.state,
            payments=payments_from_envelope(
                signed.envelope, version=self.version, invoice_list=record.invoice_list
            ),
            errors=errors,
        )


# =========================================================================
# Token
# =========================================================================


class TokenLedgerStrategy:
    """Token-account ledger (version 4)."""

    version = LedgerVersion.TOKEN_V4

    def __init__(
        self,
        rpc: LedgerRpc,
        retrier: SubmissionRetrier,
        *,
        app_index: int = 0,
    ) -> None:
        self._rpc = rpc
        self._retrier = retrier
        self._app_index = app_index

    async def service_config(self, subsidizer: PrivateKey | None = None) -> ServiceConfig:
        """Service config, checked for a usable subsidizer.

        Raises:
            NoSubsidizerError: Neither the service nor the caller provides one.
        """
        config = await self._rpc.get_service_config()
        if config.subsidizer is None and subsidizer is None:
            raise NoSubsidizerError()
        return config

    async def create_account(
        self,
        key: PrivateKey,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
    ) -> None:
        config = await self.service_config(subsidizer)
        if config.token is None or config.token_program is None:
            raise UnexpectedError("service config is missing the token mint or program")

        rent = await self._rpc.get_minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_SIZE)
        token_account = derive_token_account(key)
        plan = plan_create_account(
            key,
            token_account,
            mint=config.token,
            token_program=config.token_program,
            rent_lamports=rent,
            service_subsidizer=config.subsidizer,
            subsidizer=subsidizer,
        )
        await self._retrier.create_token_account(plan, commitment=commitment)
        _logger.info(
            "strategy:account_created owner=%s token_account=%s",
            key.public().to_string(),
            token_account.public().to_string(),
        )

    async def get_account_info(self, account: PublicKey, *, commitment: Commitment) -> AccountInfo:
        return await self._rpc.get_account_info(account, commitment=commitment)

    async def submit_payment(
        self,
        payment: Payment,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult:
        config = await self.service_config(subsidizer)
        plan = plan_token_payment(
            payment,
            app_index=self._app_index,
            service_subsidizer=config.subsidizer,
            subsidizer=subsidizer,
            transfer_source=transfer_source,
        )
        return await self._retrier.submit_token(plan, commitment=commitment)

    async def submit_earn_batch(
        self,
        batch: EarnBatch,
        *,
        commitment: Commitment,
        subsidizer: PrivateKey | None = None,
        transfer_source: PublicKey | None = None,
    ) -> SubmitTransactionResult:
        config = await self.service_config(subsidizer)
        plan = plan_token_earn_batch(
            batch,
            app_index=self._app_index,
            service_subsidizer=config.subsidizer,
            subsidizer=subsidizer,
            transfer_source=transfer_source,
        )
        return await self._retrier.submit_token(plan, commitment=commitment)

    async def request_airdrop(
        self, account: PublicKey, quarks: int, *, commitment: Commitment
    ) -> bytes:
        return await self._rpc.request_airdrop(account, quarks, commitment=commitment)

    async def get_transaction(self, tx_id: bytes, *, commitment: Commitment) -> TransactionData:
        record = await self._rpc.get_transaction(tx_id, commitment=commitment)
        return self.transaction_data(record)

    def transaction_data(self, record: TransactionRecord) -> TransactionData:
        if record.blob is None:
            return TransactionData(tx_id=record.tx_id, state=record.state)

        try:
            signed = SignedTokenTransaction.from_blob(record.blob)
        except ValueError as e:
            raise UnexpectedError(f"undecodable token transaction: {e}") from e

        errors = None
        if record.tx_error is not None:
            errors = errors_from_token_error(
                record.tx_error,
                record.instruction_index,
                signed.transaction.transfer_indices(),
            )
        return TransactionData(
            tx_id=record.tx_id,
            state=record.state,
            payments=payments_from_token_transaction(
                signed.transaction, invoice_list=record.invoice_list
            ),
            errors=errors,
        )
