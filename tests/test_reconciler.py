from decimal import Decimal

import pytest

from conftest import NOW, make_invoice
from reqResVal_models.billing_models import (
    HistoryAction,
    InvoiceStatus,
    Payment,
    PaymentKind,
    PaymentStatus,
)
from services import invoice_state, reconciler
from services.errors import BillingValidationError, StateConflictError


def open_invoice():
    invoice = make_invoice()
    invoice_state.send(invoice, NOW)
    return invoice


def payment(amount, status=PaymentStatus.COMPLETED, **overrides):
    data = dict(id=f"pay_{amount}", invoice_id="inv_1", user_id="user-1",
                amount=Decimal(amount), status=status)
    data.update(overrides)
    return Payment(**data)


def test_partial_then_full_payment_then_refund():
    """90.00 invoice: 30 -> PARTIALLY_PAID, 60 -> PAID, refund 60 -> PARTIALLY_PAID"""
    invoice = open_invoice()
    assert invoice.total_amount == Decimal("90.00")

    first = payment("30")
    invoice = reconciler.apply_payment(invoice, first, NOW)
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert invoice.paid_amount == Decimal("30")
    assert invoice.balance_due == Decimal("60.00")

    second = payment("60")
    invoice = reconciler.apply_payment(invoice, second, NOW)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.balance_due == 0
    assert invoice.paid_at == NOW

    invoice = reconciler.apply_refund(invoice, second, now=NOW)
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert invoice.paid_amount == Decimal("30")
    assert invoice.balance_due == Decimal("60.00")
    assert invoice.paid_at is None
    assert invoice.history[-1].action == HistoryAction.PAYMENT_REFUNDED


def test_apply_payment_does_not_mutate_input():
    invoice = open_invoice()
    updated = reconciler.apply_payment(invoice, payment("30"), NOW)
    assert invoice.paid_amount == 0
    assert updated is not invoice


@pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.FAILED])
def test_non_completed_payments_do_not_move_money(status):
    invoice = open_invoice()
    updated = reconciler.apply_payment(invoice, payment("30", status=status), NOW)
    assert updated.paid_amount == 0
    assert updated.status == InvoiceStatus.SENT


def test_payment_on_draft_is_conflict():
    with pytest.raises(StateConflictError):
        reconciler.apply_payment(make_invoice(), payment("30"), NOW)


def test_payment_for_other_invoice_rejected():
    with pytest.raises(BillingValidationError):
        reconciler.apply_payment(open_invoice(), payment("30", invoice_id="inv_other"), NOW)


def test_overpayment_clamps_balance_and_marks_paid():
    invoice = reconciler.apply_payment(open_invoice(), payment("100"), NOW)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_amount == Decimal("100")
    assert invoice.balance_due == 0


def test_full_refund_returns_to_sent():
    original = payment("90")
    invoice = reconciler.apply_payment(open_invoice(), original, NOW)
    invoice = reconciler.apply_refund(invoice, original, now=NOW)
    assert invoice.status == InvoiceStatus.SENT
    assert invoice.paid_amount == 0


class TestRefundBounds:

    def test_refund_more_than_paid_rejected(self):
        original = payment("30")
        invoice = reconciler.apply_payment(open_invoice(), original, NOW)
        with pytest.raises(BillingValidationError):
            reconciler.apply_refund(invoice, original, Decimal("31"), NOW)

    def test_zero_refund_rejected(self):
        original = payment("30")
        invoice = reconciler.apply_payment(open_invoice(), original, NOW)
        with pytest.raises(BillingValidationError):
            reconciler.apply_refund(invoice, original, Decimal("0"), NOW)

    def test_pending_payment_cannot_be_refunded(self):
        with pytest.raises(StateConflictError):
            reconciler.reverse_payment(payment("30", status=PaymentStatus.PENDING))

    def test_refund_of_a_refund_rejected(self):
        with pytest.raises(StateConflictError):
            reconciler.reverse_payment(payment("30", kind=PaymentKind.REFUND))


class TestReversal:

    def test_partial_reversal_links_back_and_keeps_original_amount(self):
        original = payment("60", transaction_id="txn_60")
        updated, reversal = reconciler.reverse_payment(original, Decimal("20"), NOW, transaction_id="re_1")

        assert updated.amount == Decimal("60")
        assert updated.refunded_amount == Decimal("20")
        assert updated.status == PaymentStatus.COMPLETED
        assert reconciler.refundable_amount(updated) == Decimal("40")

        assert reversal.kind == PaymentKind.REFUND
        assert reversal.status == PaymentStatus.COMPLETED
        assert reversal.reverses_payment_id == original.id
        assert reversal.amount == Decimal("20")
        assert reversal.transaction_id == "re_1"

    def test_reversal_of_everything_marks_original_refunded(self):
        original = payment("60")
        first, _ = reconciler.reverse_payment(original, Decimal("20"), NOW)
        second, reversal = reconciler.reverse_payment(first, now=NOW)
        assert reversal.amount == Decimal("40")
        assert second.status == PaymentStatus.REFUNDED
        assert second.refunded_amount == Decimal("60")

    def test_ledger_matches_applied_amount(self):
        a, b = payment("30"), payment("60")
        b_after, reversal = reconciler.reverse_payment(b, Decimal("60"), NOW)
        ledger = [a, b_after, reversal, payment("5", status=PaymentStatus.FAILED)]
        assert reconciler.paid_from_ledger(ledger) == Decimal("30")
