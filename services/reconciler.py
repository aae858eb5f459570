"""
Payment reconciler.

The single place that moves money on an invoice. Manual entries, gateway
webhooks and refunds all end up here. Callers run these inside the invoice's
store transaction and persist the returned copies.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Tuple
from uuid import uuid4

from reqResVal_models.billing_models import (
    HistoryAction,
    Invoice,
    Payment,
    PaymentKind,
    PaymentStatus,
    ZERO,
    utc_now,
)
from services import invoice_state
from services.errors import BillingValidationError, StateConflictError
from services.totals_service import to_decimal


def _check_same_invoice(invoice: Invoice, payment: Payment) -> None:
    if payment.invoice_id != invoice.id:
        raise BillingValidationError(
            f"Payment {payment.id} belongs to invoice {payment.invoice_id}, not {invoice.id}"
        )


def apply_payment(invoice: Invoice, payment: Payment, now: Optional[datetime] = None) -> Invoice:
    """
    Apply a payment to a copy of the invoice and return it.

    Only COMPLETED payments move paidAmount; anything else returns the
    invoice unchanged.
    """
    _check_same_invoice(invoice, payment)
    updated = invoice.model_copy(deep=True)
    if payment.kind != PaymentKind.PAYMENT or payment.status != PaymentStatus.COMPLETED:
        return updated
    if updated.status not in invoice_state.PAYABLE_STATUSES:
        raise StateConflictError(f"Cannot apply a payment to a {updated.status.value} invoice")

    now = now or utc_now()
    updated.paid_amount = updated.paid_amount + payment.amount
    invoice_state.settle(updated, now)
    updated.updated_at = now
    if updated.status == invoice_state.S.PAID:
        message = f"Payment of {payment.amount} received; invoice fully paid"
    else:
        message = f"Partial payment of {payment.amount} received"
    updated.record(HistoryAction.PAYMENT_RECEIVED, message, at=now)
    return updated


def refundable_amount(payment: Payment) -> Decimal:
    return payment.amount - payment.refunded_amount


def _resolve_refund_amount(payment: Payment, amount) -> Decimal:
    if payment.kind != PaymentKind.PAYMENT:
        raise StateConflictError("A refund cannot itself be refunded")
    if payment.status != PaymentStatus.COMPLETED:
        raise StateConflictError("Can only refund completed payments")
    remaining = refundable_amount(payment)
    value = remaining if amount is None else to_decimal(amount, "refund amount")
    if value <= 0:
        raise BillingValidationError("Refund amount must be greater than 0")
    if value > remaining:
        raise BillingValidationError(
            f"Refund amount {value} exceeds the refundable {remaining} of payment {payment.id}"
        )
    return value


def apply_refund(invoice: Invoice, payment: Payment, amount=None, now: Optional[datetime] = None) -> Invoice:
    """
    Take a refund off the invoice. amount defaults to everything still
    refundable on the original payment. paidAmount never drops below 0.
    """
    _check_same_invoice(invoice, payment)
    value = _resolve_refund_amount(payment, amount)
    now = now or utc_now()

    updated = invoice.model_copy(deep=True)
    updated.paid_amount = max(ZERO, updated.paid_amount - value)
    invoice_state.settle(updated, now)
    updated.updated_at = now
    updated.record(HistoryAction.PAYMENT_REFUNDED, f"Payment {payment.id} refunded: {value}", at=now)
    return updated


def reverse_payment(payment: Payment, amount=None, now: Optional[datetime] = None,
                    transaction_id: Optional[str] = None) -> Tuple[Payment, Payment]:
    """
    Build the linked reversal for a refund. The original amount is never
    touched; it only accumulates refundedAmount and becomes REFUNDED once
    nothing is left to refund.
    """
    value = _resolve_refund_amount(payment, amount)
    now = now or utc_now()

    original = payment.model_copy(deep=True)
    original.refunded_amount = original.refunded_amount + value
    if refundable_amount(original) == 0:
        original.status = PaymentStatus.REFUNDED

    reversal = Payment(
        id=f"pay_{uuid4().hex[:12]}",
        invoice_id=payment.invoice_id,
        user_id=payment.user_id,
        amount=value,
        currency=payment.currency,
        method=payment.method,
        status=PaymentStatus.COMPLETED,
        kind=PaymentKind.REFUND,
        reverses_payment_id=payment.id,
        transaction_id=transaction_id,
        notes=f"Refund for payment {payment.transaction_id or payment.id}",
        processed_at=now,
        created_at=now,
    )
    return original, reversal


def paid_from_ledger(payments: Iterable[Payment]) -> Decimal:
    """paidAmount recomputed from the payment ledger, for consistency checks."""
    paid = ZERO
    for payment in payments:
        if payment.kind == PaymentKind.PAYMENT and payment.status in (
            PaymentStatus.COMPLETED, PaymentStatus.REFUNDED
        ):
            paid += payment.amount
        elif payment.kind == PaymentKind.REFUND and payment.status == PaymentStatus.COMPLETED:
            paid -= payment.amount
    return max(ZERO, paid)
