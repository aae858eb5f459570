"""
Invoice state machine.

Owns status transitions and the derived financial fields of an Invoice.
Every function here mutates the Invoice it is given and performs no I/O;
callers hold the per-invoice lock and persist the result.

    DRAFT ──send──▶ SENT ──view──▶ VIEWED
                     │               │
                     ├── payment ────┴──▶ PARTIALLY_PAID ──▶ PAID
                     │                                        │
                     └──────────── cancel ◀── (any but PAID)  └─ refund ─▶ PARTIALLY_PAID

OVERDUE is never stored: effective_status() derives it from dueDate at read time.
"""

from datetime import datetime
from typing import Optional

from reqResVal_models.billing_models import (
    HistoryAction,
    Invoice,
    InvoiceStatus,
    ZERO,
    utc_now,
)
from services.errors import BillingValidationError, StateConflictError
from services.totals_service import compute_totals

S = InvoiceStatus

ALLOWED_TRANSITIONS = {
    S.DRAFT: {S.SENT, S.CANCELLED},
    S.SENT: {S.VIEWED, S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED, S.DRAFT},
    S.VIEWED: {S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED, S.DRAFT},
    S.PARTIALLY_PAID: {S.PAID, S.OVERDUE, S.CANCELLED, S.SENT, S.VIEWED},
    S.OVERDUE: {S.PARTIALLY_PAID, S.PAID, S.CANCELLED, S.SENT, S.VIEWED},
    # Only a refund may leave PAID.
    S.PAID: {S.PARTIALLY_PAID, S.SENT, S.VIEWED},
    S.CANCELLED: set(),
}

OPEN_STATUSES = (S.SENT, S.VIEWED, S.PARTIALLY_PAID, S.OVERDUE)
PAYABLE_STATUSES = OPEN_STATUSES + (S.PAID,)


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(invoice: Invoice, target: InvoiceStatus, now: Optional[datetime] = None,
               description: Optional[str] = None, performed_by: Optional[str] = None) -> bool:
    """Move invoice to target. Returns False when it is already there."""
    if invoice.status == target:
        return False
    if not can_transition(invoice.status, target):
        raise StateConflictError(
            f"Invoice {invoice.id} cannot move from {invoice.status.value} to {target.value}"
        )
    now = now or utc_now()
    previous = invoice.status
    invoice.status = target
    invoice.updated_at = now

    if target == S.SENT and invoice.sent_at is None:
        invoice.sent_at = now
    elif target == S.VIEWED and invoice.viewed_at is None:
        invoice.viewed_at = now
    elif target == S.PAID:
        invoice.paid_at = now
    elif target == S.CANCELLED:
        invoice.cancelled_at = now

    if previous == S.PAID:
        invoice.paid_at = None

    invoice.record(
        HistoryAction.STATUS_CHANGED,
        description or f"Status changed from {previous.value} to {target.value}",
        performed_by=performed_by,
        at=now,
    )
    return True


def apply_totals(invoice: Invoice) -> Invoice:
    """Recompute subtotal/tax/discount/total/balance from items and terms."""
    totals = compute_totals(invoice.items, invoice.tax_rate, invoice.discount, invoice.discount_type)
    invoice.subtotal = totals.subtotal
    invoice.tax_amount = totals.tax_amount
    invoice.discount_amount = totals.discount_amount
    invoice.total_amount = totals.total
    invoice.total_clamped = totals.clamped
    invoice.balance_due = max(ZERO, totals.total - invoice.paid_amount)
    return invoice


def ensure_editable(invoice: Invoice) -> None:
    """Financial fields may only change while the invoice is a DRAFT."""
    if invoice.status != S.DRAFT:
        raise StateConflictError(
            f"Invoice {invoice.id} is {invoice.status.value}; reopen it before editing items, tax or discount"
        )


def send(invoice: Invoice, now: Optional[datetime] = None, performed_by: Optional[str] = None) -> bool:
    """DRAFT -> SENT. Re-sending an already sent invoice is a no-op here."""
    if invoice.status in (S.SENT, S.VIEWED, S.PARTIALLY_PAID, S.OVERDUE):
        return False
    if invoice.status != S.DRAFT:
        raise StateConflictError(f"Cannot send a {invoice.status.value} invoice")
    if not invoice.client_id:
        raise BillingValidationError("Invoice has no client")
    if not invoice.items:
        raise BillingValidationError("Invoice needs at least one item before it can be sent")
    apply_totals(invoice)
    transition(invoice, S.SENT, now, "Invoice sent", performed_by)
    invoice.record(HistoryAction.SENT, f"Invoice {invoice.invoice_number or invoice.id} sent",
                   performed_by=performed_by, at=invoice.updated_at)
    return True


def mark_viewed(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """SENT -> VIEWED when the recipient opens the share link. Advisory only."""
    now = now or utc_now()
    if invoice.status != S.SENT:
        return False
    transition(invoice, S.VIEWED, now, "Invoice viewed via share link")
    invoice.record(HistoryAction.VIEWED, "Invoice viewed via share link", at=now)
    return True


def cancel(invoice: Invoice, now: Optional[datetime] = None, performed_by: Optional[str] = None) -> bool:
    if invoice.status == S.PAID:
        raise StateConflictError("Cannot cancel a paid invoice")
    if invoice.status == S.CANCELLED:
        return False
    transition(invoice, S.CANCELLED, now, "Invoice cancelled", performed_by)
    invoice.record(HistoryAction.CANCELLED, "Invoice cancelled", performed_by=performed_by,
                   at=invoice.updated_at)
    return True


def reopen(invoice: Invoice, reason: str, now: Optional[datetime] = None,
           performed_by: Optional[str] = None) -> bool:
    """
    Explicit, audited SENT|VIEWED -> DRAFT so a sent invoice's totals can be
    corrected. Refused once any money has been applied.
    """
    if invoice.status == S.DRAFT:
        return False
    if invoice.status not in (S.SENT, S.VIEWED):
        raise StateConflictError(f"Cannot reopen a {invoice.status.value} invoice")
    if invoice.paid_amount > 0:
        raise StateConflictError("Cannot reopen an invoice with applied payments")
    if not reason or not reason.strip():
        raise BillingValidationError("A reason is required to reopen an invoice")
    transition(invoice, S.DRAFT, now, "Invoice reopened for editing", performed_by)
    invoice.record(HistoryAction.REOPENED, f"Reopened: {reason.strip()}", performed_by=performed_by,
                   at=invoice.updated_at)
    return True


def settle(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """Derive the payment-driven status from paidAmount vs totalAmount."""
    invoice.balance_due = max(ZERO, invoice.total_amount - invoice.paid_amount)
    if invoice.status in (S.DRAFT, S.CANCELLED):
        return False

    if invoice.paid_amount >= invoice.total_amount:
        target = S.PAID
    elif invoice.paid_amount > 0:
        target = S.PARTIALLY_PAID
    else:
        target = S.VIEWED if invoice.viewed_at else S.SENT
    return transition(invoice, target, now)


def is_overdue(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    now = now or utc_now()
    return (
        invoice.status in (S.SENT, S.VIEWED, S.PARTIALLY_PAID)
        and invoice.due_date is not None
        and now > invoice.due_date
        and invoice.balance_due > 0
    )


def effective_status(invoice: Invoice, now: Optional[datetime] = None) -> InvoiceStatus:
    """Status as seen by readers: OVERDUE is computed lazily, never stored."""
    if is_overdue(invoice, now):
        return S.OVERDUE
    return invoice.status
