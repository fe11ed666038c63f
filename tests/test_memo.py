"""
Tests for the structured memo and invoice fingerprints.

Test plan:
- Layout: magic in the low two bits, version/type/app index at their bit
  offsets, 32 bytes total
- Decode: parse_memo recovers every field written by build_memo,
  foreign keys shorter than 29 bytes are zero-padded
- Validation: out-of-range fields raise ValueError, bad magic or a
  future version is not a valid memo
- Fingerprints: deterministic, 28 bytes, empty list differs from the
  empty foreign key, order-sensitive
- Selection: text wins, app index 0 means no memo, invoices only bind
  when present
"""

import pytest

from nexus_pay.memo import (
    EMPTY_FOREIGN_KEY,
    MEMO_SIZE,
    MEMO_VERSION,
    build_memo,
    decode_memo_text,
    encode_memo_text,
    invoice_list_hash,
    is_valid_memo,
    parse_memo,
    select_memo,
)
from nexus_pay.models import Invoice, InvoiceList, LineItem, PaymentType


def _invoice(title: str = "Widget", amount: int = 10) -> Invoice:
    return Invoice(items=(LineItem(title=title, amount=amount, sku=b"sku-1"),))


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


class TestLayout:
    def test_size_is_32_bytes(self) -> None:
        assert len(build_memo(1, PaymentType.EARN, 1)) == MEMO_SIZE

    def test_magic_in_low_bits(self) -> None:
        memo = build_memo(1, PaymentType.SPEND, 7)
        assert memo[0] & 0x3 == 0x1

    def test_version_bits(self) -> None:
        memo = build_memo(5, PaymentType.NONE, 0)
        assert (memo[0] >> 2) & 0x7 == 5

    def test_type_spans_first_two_bytes(self) -> None:
        memo = build_memo(1, PaymentType.P2P, 0)
        assert (memo[0] >> 5) | ((memo[1] & 0x3) << 3) == int(PaymentType.P2P)

    def test_app_index_max(self) -> None:
        memo = build_memo(1, PaymentType.EARN, 0xFFFF)
        assert parse_memo(memo).app_index == 0xFFFF

    def test_no_foreign_key_leaves_tail_zero(self) -> None:
        memo = build_memo(1, PaymentType.EARN, 1)
        assert memo[4:] == bytes(28)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


class TestDecode:
    def test_fields_recovered(self) -> None:
        fk = bytes(range(1, 29))
        memo = parse_memo(build_memo(1, PaymentType.SPEND, 4242, fk))
        assert memo.version == 1
        assert memo.type == PaymentType.SPEND
        assert memo.app_index == 4242
        assert memo.invoice_hash == fk

    def test_full_width_foreign_key(self) -> None:
        fk = bytes([0xFF] * 28) + bytes([0x3F])
        memo = parse_memo(build_memo(1, PaymentType.EARN, 1, fk))
        assert memo.foreign_key == fk

    def test_short_foreign_key_is_padded(self) -> None:
        memo = parse_memo(build_memo(1, PaymentType.EARN, 1, b"\xab\xcd"))
        assert memo.foreign_key[:2] == b"\xab\xcd"
        assert memo.foreign_key[2:] == bytes(27)

    def test_text_form(self) -> None:
        raw = build_memo(1, PaymentType.P2P, 3)
        decoded = decode_memo_text(encode_memo_text(raw))
        assert decoded is not None
        assert decoded.type == PaymentType.P2P

    def test_plain_text_is_not_a_memo(self) -> None:
        assert decode_memo_text("thanks for lunch") is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("version", [-1, 8])
    def test_bad_version(self, version: int) -> None:
        with pytest.raises(ValueError, match="version"):
            build_memo(version, PaymentType.EARN, 0)

    def test_unknown_type_not_encodable(self) -> None:
        with pytest.raises(ValueError, match="payment type"):
            build_memo(1, PaymentType.UNKNOWN, 0)

    def test_app_index_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="app index"):
            build_memo(1, PaymentType.EARN, 0x10000)

    def test_foreign_key_too_long(self) -> None:
        with pytest.raises(ValueError, match="foreign key"):
            build_memo(1, PaymentType.EARN, 0, bytes(30))

    def test_wrong_length_invalid(self) -> None:
        assert not is_valid_memo(bytes(31))

    def test_bad_magic_invalid(self) -> None:
        memo = bytearray(build_memo(1, PaymentType.EARN, 1))
        memo[0] &= 0xFC
        assert not is_valid_memo(bytes(memo))

    def test_future_version_invalid(self) -> None:
        assert not is_valid_memo(build_memo(MEMO_VERSION + 1, PaymentType.EARN, 1))

    def test_parse_rejects_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_memo(bytes(32))


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


class TestInvoiceHash:
    def test_deterministic(self) -> None:
        il = InvoiceList(invoices=(_invoice(),))
        assert invoice_list_hash(il) == invoice_list_hash(InvoiceList(invoices=(_invoice(),)))

    def test_size(self) -> None:
        assert len(invoice_list_hash(InvoiceList(invoices=(_invoice(),)))) == 28

    def test_empty_list_is_not_empty_key(self) -> None:
        assert invoice_list_hash(InvoiceList()) != EMPTY_FOREIGN_KEY

    def test_order_sensitive(self) -> None:
        a, b = _invoice("A"), _invoice("B")
        assert invoice_list_hash(InvoiceList(invoices=(a, b))) != invoice_list_hash(
            InvoiceList(invoices=(b, a))
        )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelection:
    def test_text_wins(self) -> None:
        sel = select_memo(
            text="hi",
            payment_type=PaymentType.SPEND,
            app_index=1,
            invoice_list=None,
        )
        assert sel.text == "hi"
        assert sel.structured is None

    def test_no_app_index_no_memo(self) -> None:
        sel = select_memo(
            text="", payment_type=PaymentType.SPEND, app_index=0, invoice_list=None
        )
        assert sel.is_empty

    def test_structured_without_invoices_uses_empty_key(self) -> None:
        sel = select_memo(
            text="", payment_type=PaymentType.EARN, app_index=1, invoice_list=None
        )
        assert sel.structured is not None
        assert parse_memo(sel.structured).invoice_hash == EMPTY_FOREIGN_KEY
        assert sel.invoice_list is None

    def test_structured_binds_invoice_hash(self) -> None:
        il = InvoiceList(invoices=(_invoice(),))
        sel = select_memo(text="", payment_type=PaymentType.SPEND, app_index=1, invoice_list=il)
        assert sel.structured is not None
        memo = parse_memo(sel.structured)
        assert memo.app_index == 1
        assert memo.invoice_hash == invoice_list_hash(il)
        assert sel.invoice_list == il
