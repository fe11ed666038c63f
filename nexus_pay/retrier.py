"""
Sign, submit and retry a single assembled transaction.

The nonce loop is narrow on purpose: only a BadNonce outcome (stale
sequence number on the legacy ledger, stale blockhash on the token
ledger) is retried, up to ``max_nonce_retries`` attempts. Every other
outcome, success or failure, ends the loop. There is no backoff here;
transient transport failures are retried one layer down, inside the RPC
client.

Legacy loop:
    sequence fetched once from the envelope source, then
    ``sequence + offset`` with offset = 1, 2, ... Re-signed every attempt.

Token loop:
    fresh blockhash every attempt, re-signed, dedupe id passed unchanged.

Whitelisting (legacy only):
    When a whitelist key is configured and none of the plan's own signers
    equals it, the whitelist key co-signs.

Outcome mapping:
    ALREADY_SUBMITTED, REJECTED and PAYER_REQUIRED are raised. FAILED and
    INVOICE_ERROR become error values inside SubmitTransactionResult.
"""

from __future__ import annotations

from nexus_pay.errors import (
    CREATE_ACCOUNT_RESULTS,
    SUBMIT_RESULTS,
    BadNonceError,
    PaymentError,
    classify,
    classify_invoice_error,
    errors_from_legacy_result,
    errors_from_token_error,
)
from nexus_pay.keys import PrivateKey
from nexus_pay.logging_setup import get_logger
from nexus_pay.models import Commitment, SubmitTransactionResult
from nexus_pay.rpc.client import LedgerRpc, SubmitResponse
from nexus_pay.signer import sign_legacy_envelope, sign_token_transaction
from nexus_pay.tx import LegacyPlan, TokenPlan

_logger = get_logger("retrier")


# =========================================================================
# Outcome mapping (pure)
# =========================================================================


def _raise_terminal(resp: SubmitResponse) -> None:
    err = classify(SUBMIT_RESULTS, resp.result, what="submit result")
    if err is not None:
        err.tx_id = resp.tx_id
        raise err


def legacy_result(resp: SubmitResponse, tx_id: bytes) -> SubmitTransactionResult:
    """Map a legacy submit response to a SubmitTransactionResult.

    Raises:
        PaymentError: For terminal submit outcomes (already submitted,
            rejected, payer required) and unrecognized codes.
    """
    _raise_terminal(resp)
    tx_id = resp.tx_id or tx_id

    if resp.result == "FAILED":
        errors = errors_from_legacy_result(resp.result_code or "", resp.op_codes)
        return SubmitTransactionResult(tx_id=tx_id, errors=errors)
    if resp.result == "INVOICE_ERROR":
        return SubmitTransactionResult(
            tx_id=tx_id,
            invoice_errors=tuple(
                classify_invoice_error(e.reason, e.op_index) for e in resp.invoice_errors
            ),
        )
    return SubmitTransactionResult(tx_id=tx_id)


def token_result(
    resp: SubmitResponse,
    tx_id: bytes,
    transfer_indices: tuple[int, ...],
) -> SubmitTransactionResult:
    """Map a token submit response to a SubmitTransactionResult."""
    _raise_terminal(resp)
    tx_id = resp.tx_id or tx_id

    if resp.result == "FAILED":
        errors = errors_from_token_error(
            resp.tx_error or "UNKNOWN", resp.instruction_index, transfer_indices
        )
        return SubmitTransactionResult(tx_id=tx_id, errors=errors)
    if resp.result == "INVOICE_ERROR":
        return SubmitTransactionResult(
            tx_id=tx_id,
            invoice_errors=tuple(
                classify_invoice_error(e.reason, e.op_index) for e in resp.invoice_errors
            ),
        )
    return SubmitTransactionResult(tx_id=tx_id)


def _is_bad_nonce(result: SubmitTransactionResult) -> bool:
    return isinstance(result.errors.tx_error, BadNonceError)


# =========================================================================
# Retrier
# =========================================================================


class SubmissionRetrier:
    """Drives the nonce-retry loop for both ledgers.

    Args:
        rpc: Ledger RPC implementation.
        max_nonce_retries: Attempt bound for BadNonce retries.
        whitelist_key: Optional legacy co-signing key.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        *,
        max_nonce_retries: int = 3,
        whitelist_key: PrivateKey | None = None,
    ) -> None:
        self._rpc = rpc
        self._attempts = max(1, max_nonce_retries)
        self._whitelist_key = whitelist_key

    def _legacy_signers(self, plan: LegacyPlan) -> tuple[PrivateKey, ...]:
        wl = self._whitelist_key
        if wl is None or any(s.public() == wl.public() for s in plan.signers):
            return plan.signers
        return plan.signers + (wl,)

    async def submit_legacy(
        self,
        plan: LegacyPlan,
        *,
        version: int,
        passphrase: str,
    ) -> SubmitTransactionResult:
        """Submit a legacy envelope, retrying on a stale sequence number.

        Returns:
            The first non-BadNonce result, or the last BadNonce result once
            the attempt bound is exhausted.

        Raises:
            RpcError: Transport failures, including FAILED_PRECONDITION
                when the legacy ledger has been retired.
            PaymentError: Terminal submit outcomes.
        """
        source = plan.envelope.source
        info = await self._rpc.get_account_info_legacy(source, version=version)
        signers = self._legacy_signers(plan)

        result: SubmitTransactionResult | None = None
        for offset in range(1, self._attempts + 1):
            envelope = plan.envelope.with_sequence(info.sequence + offset)
            signed = sign_legacy_envelope(envelope, passphrase, signers)
            resp = await self._rpc.submit_legacy(signed.blob(), plan.invoice_list, version=version)
            result = legacy_result(resp, signed.tx_hash)
            if not _is_bad_nonce(result):
                return result
            _logger.debug(
                "retrier:legacy_bad_seq source=%s sequence=%d attempt=%d",
                source.to_string(),
                envelope.sequence,
                offset,
            )

        assert result is not None
        return result

    async def submit_token(
        self,
        plan: TokenPlan,
        *,
        commitment: Commitment,
    ) -> SubmitTransactionResult:
        """Submit a token transaction, retrying on a stale blockhash."""
        result: SubmitTransactionResult | None = None
        for attempt in range(1, self._attempts + 1):
            blockhash = await self._rpc.get_recent_blockhash()
            tx = plan.transaction.with_blockhash(blockhash)
            signed = sign_token_transaction(tx, plan.signers)
            resp = await self._rpc.submit_transaction(
                signed.blob(),
                plan.invoice_list,
                commitment=commitment,
                dedupe_id=plan.dedupe_id,
            )
            result = token_result(resp, signed.tx_id, tx.transfer_indices())
            if not _is_bad_nonce(result):
                return result
            _logger.debug("retrier:token_bad_nonce attempt=%d", attempt)

        assert result is not None
        return result

    async def create_token_account(
        self,
        plan: TokenPlan,
        *,
        commitment: Commitment,
    ) -> bytes:
        """Submit a create-account transaction, retrying on a stale blockhash.

        Returns:
            The transaction ID (first signature).

        Raises:
            AccountExistsError: The token account already exists.
            PayerRequiredError: The service refused to fund the account.
            BadNonceError: Blockhash stayed stale for every attempt.
        """
        last: PaymentError | None = None
        for attempt in range(1, self._attempts + 1):
            blockhash = await self._rpc.get_recent_blockhash()
            tx = plan.transaction.with_blockhash(blockhash)
            signed = sign_token_transaction(tx, plan.signers)
            code = await self._rpc.create_account(signed.blob(), commitment=commitment)
            err = classify(CREATE_ACCOUNT_RESULTS, code, what="create account result")
            if err is None:
                return signed.tx_id
            if not isinstance(err, BadNonceError):
                raise err
            last = err
            _logger.debug("retrier:create_bad_nonce attempt=%d", attempt)

        assert last is not None
        raise last

