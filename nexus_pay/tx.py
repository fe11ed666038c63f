"""
Transaction assembly for both ledgers.

Builds unsigned transaction descriptions from a Payment or EarnBatch.
Pure and deterministic: no network state, no signing. Sequence numbers
(legacy) and recent blockhashes (token) are filled in by the retrier at
submit time.

Legacy ledger:
    - One payment operation per payment/earn, one shared envelope.
    - Fee = BASE_FEE * number of operations.
    - Envelope source is the first signer: the channel when one is set
      (and differs from the sender), otherwise the sender. Each
      operation's source is always the sender.
    - v2 amounts are quarks * 100 in the issued KIN asset; v3 amounts are
      quarks in the native asset.

Token ledger:
    - Optional memo instruction, then one transfer per payment/earn.
    - Fee payer is the caller-supplied subsidizer when given (it then
      signs first), otherwise the service subsidizer (which co-signs
      server-side).
    - The transfer source may differ from the sender's key after account
      resolution; the sender stays the transfer owner and signer.

Wire form:
    Both shapes serialize to canonical JSON dicts (``to_dict``). Parsing
    (``from_dict``) and payment reconstruction are here too so webhook
    handlers and transaction lookups read the same format they write.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from nexus_pay.canonical_json import b64, canonical_json_bytes, unb64
from nexus_pay.keys import PrivateKey, PublicKey
from nexus_pay.memo import (
    MemoSelection,
    decode_memo_text,
    encode_memo_text,
    invoice_list_hash,
    is_valid_memo,
    parse_memo,
    select_memo,
)
from nexus_pay.models import (
    EarnBatch,
    Invoice,
    InvoiceList,
    LedgerVersion,
    Payment,
    PaymentType,
    ReadOnlyPayment,
)

# Legacy fee per operation, in base units.
BASE_FEE = 100

# v2 base unit is 1e-7, a quark is 1e-5.
V2_QUARK_MULTIPLIER = 100

KIN_ASSET_CODE = "KIN"

MEMO_PROGRAM = "memo"
TOKEN_PROGRAM = "token"
SYSTEM_PROGRAM = "system"

# Size of a token account, used for the rent-exemption query.
TOKEN_ACCOUNT_SIZE = 165


# =========================================================================
# Legacy envelope
# =========================================================================


@dataclass(frozen=True)
class Asset:
    """Legacy asset: native when ``code`` is None."""

    code: str | None = None
    issuer: PublicKey | None = None

    @property
    def is_native(self) -> bool:
        return self.code is None

    def to_dict(self) -> dict[str, object]:
        if self.is_native:
            return {"type": "native"}
        assert self.issuer is not None
        return {"type": "credit", "code": self.code, "issuer": self.issuer.to_string()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Asset:
        if data.get("type") == "native":
            return cls()
        return cls(code=data["code"], issuer=PublicKey.from_string(data["issuer"]))


NATIVE_ASSET = Asset()


@dataclass(frozen=True)
class LegacyOperation:
    source: PublicKey
    destination: PublicKey
    amount: int
    asset: Asset = NATIVE_ASSET

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "payment",
            "source": self.source.to_string(),
            "destination": self.destination.to_string(),
            "amount": self.amount,
            "asset": self.asset.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LegacyOperation:
        return cls(
            source=PublicKey.from_string(data["source"]),
            destination=PublicKey.from_string(data["destination"]),
            amount=int(data["amount"]),
            asset=Asset.from_dict(data.get("asset", {"type": "native"})),
        )


@dataclass(frozen=True)
class LegacyEnvelope:
    """Unsigned legacy transaction. ``memo_hash`` and ``memo_text`` exclude each other."""

    source: PublicKey
    fee: int
    operations: tuple[LegacyOperation, ...]
    sequence: int = 0
    memo_text: str | None = None
    memo_hash: bytes | None = None

    def with_sequence(self, sequence: int) -> LegacyEnvelope:
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, object]:
        memo: dict[str, object] = {"type": "none"}
        if self.memo_text is not None:
            memo = {"type": "text", "text": self.memo_text}
        elif self.memo_hash is not None:
            memo = {"type": "hash", "hash": b64(self.memo_hash)}
        return {
            "source": self.source.to_string(),
            "fee": self.fee,
            "sequence": self.sequence,
            "memo": memo,
            "operations": [op.to_dict() for op in self.operations],
        }

    def body_bytes(self) -> bytes:
        return canonical_json_bytes(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LegacyEnvelope:
        memo = data.get("memo", {"type": "none"})
        return cls(
            source=PublicKey.from_string(data["source"]),
            fee=int(data["fee"]),
            sequence=int(data.get("sequence", 0)),
            operations=tuple(LegacyOperation.from_dict(op) for op in data["operations"]),
            memo_text=memo.get("text") if memo.get("type") == "text" else None,
            memo_hash=unb64(memo["hash"]) if memo.get("type") == "hash" else None,
        )


@dataclass(frozen=True)
class LegacyPlan:
    """Everything the retrier needs to sign and submit a legacy envelope."""

    envelope: LegacyEnvelope
    signers: tuple[PrivateKey, ...]
    invoice_list: InvoiceList | None = None


# =========================================================================
# Token transaction
# =========================================================================


@dataclass(frozen=True)
class Instruction:
    """A token-ledger instruction. ``data`` holds program-specific fields."""

    program: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {"program": self.program, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Instruction:
        return cls(program=data["program"], data=dict(data.get("data", {})))

    @property
    def is_transfer(self) -> bool:
        return self.program == TOKEN_PROGRAM and self.data.get("type") == "transfer"


def memo_instruction(text: str) -> Instruction:
    return Instruction(MEMO_PROGRAM, {"memo": text})


def transfer_instruction(
    source: PublicKey,
    destination: PublicKey,
    owner: PublicKey,
    amount: int,
) -> Instruction:
    return Instruction(
        TOKEN_PROGRAM,
        {
            "type": "transfer",
            "source": source.to_string(),
            "destination": destination.to_string(),
            "owner": owner.to_string(),
            "amount": amount,
        },
    )


@dataclass(frozen=True)
class TokenTransaction:
    """Unsigned token-ledger transaction."""

    fee_payer: PublicKey
    instructions: tuple[Instruction, ...]
    blockhash: bytes = b""

    def with_blockhash(self, blockhash: bytes) -> TokenTransaction:
        return replace(self, blockhash=blockhash)

    def transfer_indices(self) -> tuple[int, ...]:
        return tuple(i for i, ins in enumerate(self.instructions) if ins.is_transfer)

    def to_dict(self) -> dict[str, object]:
        return {
            "fee_payer": self.fee_payer.to_string(),
            "blockhash": b64(self.blockhash),
            "instructions": [ins.to_dict() for ins in self.instructions],
        }

    def message_bytes(self) -> bytes:
        return canonical_json_bytes(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenTransaction:
        return cls(
            fee_payer=PublicKey.from_string(data["fee_payer"]),
            blockhash=unb64(data.get("blockhash", "")),
            instructions=tuple(Instruction.from_dict(i) for i in data["instructions"]),
        )


@dataclass(frozen=True)
class TokenPlan:
    """Everything the retrier needs to sign and submit a token transaction."""

    transaction: TokenTransaction
    signers: tuple[PrivateKey, ...]
    invoice_list: InvoiceList | None = None
    dedupe_id: bytes | None = None


# =========================================================================
# Shared helpers
# =========================================================================


def _payment_invoice_list(payment: Payment) -> InvoiceList | None:
    if payment.invoice is None:
        return None
    return InvoiceList(invoices=(payment.invoice,))


def _batch_invoice_list(batch: EarnBatch) -> InvoiceList | None:
    invoices = [e.invoice for e in batch.earns if e.invoice is not None]
    if not invoices:
        return None
    if len(invoices) != len(batch.earns):
        raise ValueError("either all or none of the earns should have an invoice set")
    return InvoiceList(invoices=tuple(invoices))


def _legacy_signers(sender: PrivateKey, channel: PrivateKey | None) -> tuple[PrivateKey, ...]:
    if channel is not None and channel != sender:
        return (channel, sender)
    return (sender,)


def _legacy_asset(version: LedgerVersion, issuer: PublicKey | None) -> tuple[Asset, int]:
    if version == LedgerVersion.LEGACY_V2:
        if issuer is None:
            raise ValueError("v2 payments require an asset issuer")
        return Asset(code=KIN_ASSET_CODE, issuer=issuer), V2_QUARK_MULTIPLIER
    return NATIVE_ASSET, 1


def _legacy_memo_fields(selection: MemoSelection) -> dict[str, Any]:
    if selection.is_empty:
        return {}
    if selection.text is not None:
        return {"memo_text": selection.text}
    return {"memo_hash": selection.structured}


def _token_memo_instructions(selection: MemoSelection) -> list[Instruction]:
    if selection.is_empty:
        return []
    if selection.text is not None:
        return [memo_instruction(selection.text)]
    assert selection.structured is not None
    return [memo_instruction(encode_memo_text(selection.structured))]


def _fee_payer_and_signers(
    sender: PrivateKey,
    subsidizer: PrivateKey | None,
    service_subsidizer: PublicKey | None,
) -> tuple[PublicKey, tuple[PrivateKey, ...]]:
    if subsidizer is not None:
        return subsidizer.public(), (subsidizer, sender)
    if service_subsidizer is None:
        raise ValueError("a subsidizer is required for token transactions")
    return service_subsidizer, (sender,)


# =========================================================================
# Legacy assembly
# =========================================================================


def plan_legacy_payment(
    payment: Payment,
    *,
    version: LedgerVersion,
    app_index: int,
    issuer: PublicKey | None = None,
) -> LegacyPlan:
    """Assemble an unsigned legacy envelope for a single payment.

    Raises:
        ValueError: If the memo cannot be built or the version needs an
            issuer that was not provided.
    """
    asset, multiplier = _legacy_asset(version, issuer)
    signers = _legacy_signers(payment.sender, payment.channel)
    selection = select_memo(
        text=payment.memo,
        payment_type=payment.type,
        app_index=app_index,
        invoice_list=_payment_invoice_list(payment),
    )

    op = LegacyOperation(
        source=payment.sender.public(),
        destination=payment.destination,
        amount=payment.quarks * multiplier,
        asset=asset,
    )
    envelope = LegacyEnvelope(
        source=signers[0].public(),
        fee=BASE_FEE,
        operations=(op,),
        **_legacy_memo_fields(selection),
    )
    return LegacyPlan(envelope=envelope, signers=signers, invoice_list=selection.invoice_list)


def plan_legacy_earn_batch(
    batch: EarnBatch,
    *,
    version: LedgerVersion,
    app_index: int,
    issuer: PublicKey | None = None,
) -> LegacyPlan:
    """Assemble an unsigned legacy envelope with one operation per earn."""
    asset, multiplier = _legacy_asset(version, issuer)
    signers = _legacy_signers(batch.sender, batch.channel)
    invoice_list = None if batch.memo else _batch_invoice_list(batch)
    selection = select_memo(
        text=batch.memo,
        payment_type=PaymentType.EARN,
        app_index=app_index,
        invoice_list=invoice_list,
    )

    sender = batch.sender.public()
    ops = tuple(
        LegacyOperation(
            source=sender,
            destination=earn.destination,
            amount=earn.quarks * multiplier,
            asset=asset,
        )
        for earn in batch.earns
    )
    envelope = LegacyEnvelope(
        source=signers[0].public(),
        fee=BASE_FEE * len(ops),
        operations=ops,
        **_legacy_memo_fields(selection),
    )
    return LegacyPlan(envelope=envelope, signers=signers, invoice_list=selection.invoice_list)


# =========================================================================
# Token assembly
# =========================================================================


def plan_token_payment(
    payment: Payment,
    *,
    app_index: int,
    service_subsidizer: PublicKey | None,
    subsidizer: PrivateKey | None = None,
    transfer_source: PublicKey | None = None,
) -> TokenPlan:
    """Assemble an unsigned token transaction for a single payment.

    Args:
        payment: The payment (destination may already be a resolved
            token account).
        app_index: Configured app index (0 = none).
        service_subsidizer: Subsidizer from the service config.
        subsidizer: Caller-supplied subsidizer; takes precedence.
        transfer_source: Resolved token account to debit. Defaults to the
            sender's own key.
    """
    fee_payer, signers = _fee_payer_and_signers(payment.sender, subsidizer, service_subsidizer)
    selection = select_memo(
        text=payment.memo,
        payment_type=payment.type,
        app_index=app_index,
        invoice_list=_payment_invoice_list(payment),
    )

    owner = payment.sender.public()
    instructions = _token_memo_instructions(selection)
    instructions.append(
        transfer_instruction(
            transfer_source or owner,
            payment.destination,
            owner,
            payment.quarks,
        )
    )
    return TokenPlan(
        transaction=TokenTransaction(fee_payer=fee_payer, instructions=tuple(instructions)),
        signers=signers,
        invoice_list=selection.invoice_list,
        dedupe_id=payment.dedupe_id,
    )


def plan_token_earn_batch(
    batch: EarnBatch,
    *,
    app_index: int,
    service_subsidizer: PublicKey | None,
    subsidizer: PrivateKey | None = None,
    transfer_source: PublicKey | None = None,
) -> TokenPlan:
    """Assemble an unsigned token transaction with one transfer per earn."""
    fee_payer, signers = _fee_payer_and_signers(batch.sender, subsidizer, service_subsidizer)
    invoice_list = None if batch.memo else _batch_invoice_list(batch)
    selection = select_memo(
        text=batch.memo,
        payment_type=PaymentType.EARN,
        app_index=app_index,
        invoice_list=invoice_list,
    )

    owner = batch.sender.public()
    instructions = _token_memo_instructions(selection)
    for earn in batch.earns:
        instructions.append(
            transfer_instruction(transfer_source or owner, earn.destination, owner, earn.quarks)
        )
    return TokenPlan(
        transaction=TokenTransaction(fee_payer=fee_payer, instructions=tuple(instructions)),
        signers=signers,
        invoice_list=selection.invoice_list,
        dedupe_id=batch.dedupe_id,
    )


def plan_create_account(
    owner: PrivateKey,
    token_account: PrivateKey,
    *,
    mint: PublicKey,
    token_program: PublicKey,
    rent_lamports: int,
    service_subsidizer: PublicKey | None,
    subsidizer: PrivateKey | None = None,
) -> TokenPlan:
    """Assemble the create-account transaction for an owner's token account.

    Three instructions: system create (funded by the subsidizer), token
    initialize (mint + owner), and set close authority to the subsidizer.
    Signers: [subsidizer?, token account, owner].
    """
    if subsidizer is not None:
        fee_payer = subsidizer.public()
        signers: tuple[PrivateKey, ...] = (subsidizer, token_account, owner)
    elif service_subsidizer is not None:
        fee_payer = service_subsidizer
        signers = (token_account, owner)
    else:
        raise ValueError("a subsidizer is required to create an account")

    account = token_account.public()
    instructions = (
        Instruction(
            SYSTEM_PROGRAM,
            {
                "type": "create_account",
                "funder": fee_payer.to_string(),
                "address": account.to_string(),
                "owner": token_program.to_string(),
                "lamports": rent_lamports,
                "size": TOKEN_ACCOUNT_SIZE,
            },
        ),
        Instruction(
            TOKEN_PROGRAM,
            {
                "type": "initialize_account",
                "account": account.to_string(),
                "mint": mint.to_string(),
                "owner": owner.public().to_string(),
            },
        ),
        Instruction(
            TOKEN_PROGRAM,
            {
                "type": "set_authority",
                "account": account.to_string(),
                "current_authority": owner.public().to_string(),
                "new_authority": fee_payer.to_string(),
                "authority_type": "close_account",
            },
        ),
    )
    return TokenPlan(
        transaction=TokenTransaction(fee_payer=fee_payer, instructions=instructions),
        signers=signers,
    )


# =========================================================================
# Payment reconstruction
# =========================================================================


def _invoice_at(
    invoice_list: InvoiceList | None, index: int, memo_hash: bytes | None
) -> Invoice | None:
    if invoice_list is None or memo_hash is None:
        return None
    if invoice_list_hash(invoice_list) != memo_hash:
        return None
    if index >= len(invoice_list.invoices):
        return None
    return invoice_list.invoices[index]


def payments_from_envelope(
    envelope: LegacyEnvelope,
    *,
    version: LedgerVersion,
    default_type: PaymentType = PaymentType.UNKNOWN,
    invoice_list: InvoiceList | None = None,
) -> tuple[ReadOnlyPayment, ...]:
    """Reconstruct payments from a legacy envelope.

    A structured hash memo supplies the type and, when the invoice list
    matches the embedded fingerprint, each operation's invoice. A text
    memo is copied to every payment.
    """
    payment_type = default_type
    memo_hash: bytes | None = None
    text = envelope.memo_text or ""
    if envelope.memo_hash is not None and is_valid_memo(envelope.memo_hash):
        memo = parse_memo(envelope.memo_hash)
        payment_type = memo.type
        memo_hash = memo.invoice_hash

    divisor = V2_QUARK_MULTIPLIER if version == LedgerVersion.LEGACY_V2 else 1
    return tuple(
        ReadOnlyPayment(
            sender=op.source,
            destination=op.destination,
            type=payment_type,
            quarks=op.amount // divisor,
            memo=text,
            invoice=_invoice_at(invoice_list, i, memo_hash),
        )
        for i, op in enumerate(envelope.operations)
    )


def payments_from_token_transaction(
    tx: TokenTransaction,
    *,
    default_type: PaymentType = PaymentType.UNKNOWN,
    invoice_list: InvoiceList | None = None,
) -> tuple[ReadOnlyPayment, ...]:
    """Reconstruct payments from a token transaction's transfers."""
    payment_type = default_type
    memo_hash: bytes | None = None
    text = ""
    for ins in tx.instructions:
        if ins.program != MEMO_PROGRAM:
            continue
        raw = str(ins.data.get("memo", ""))
        memo = decode_memo_text(raw)
        if memo is not None:
            payment_type = memo.type
            memo_hash = memo.invoice_hash
        else:
            text = raw
        break

    payments = []
    for i, ins in enumerate(ins for ins in tx.instructions if ins.is_transfer):
        payments.append(
            ReadOnlyPayment(
                sender=PublicKey.from_string(ins.data["owner"]),
                destination=PublicKey.from_string(ins.data["destination"]),
                type=payment_type,
                quarks=int(ins.data["amount"]),
                memo=text,
                invoice=_invoice_at(invoice_list, i, memo_hash),
            )
        )
    return tuple(payments)
