"""
Invoice operations behind the HTTP API.

Each mutation reads and writes the invoice inside one store transaction
(under the in-process per-invoice lock), runs the state machine, and only
after the commit publishes a thin change event. Readers always get the
effective status (OVERDUE derived from dueDate).
"""

import logging
import secrets
from collections import Counter
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from reqResVal_models.billing_models import (
    FINANCIAL_FIELDS,
    HistoryAction,
    Invoice,
    InvoiceCreate,
    InvoiceStatistics,
    InvoiceStatus,
    InvoiceTotals,
    InvoiceUpdate,
    check_currency,
    utc_now,
)
from services import event_bus as events
from services import invoice_state
from services.errors import BillingValidationError, NotFoundError, StateConflictError
from services.invoice_locks import KeyedLocks
from settings import Settings
from utils.date_utils import add_days, to_utc

logger = logging.getLogger(__name__)

# Fields that cannot be cleared by sending null in an update
_NOT_NULLABLE = {"items", "tax_rate", "discount", "discount_type", "currency", "invoice_date"}


def new_invoice_id() -> str:
    return f"inv_{uuid4().hex[:16]}"


def new_share_id() -> str:
    return secrets.token_urlsafe(16)


def normalise_currency(value: str) -> str:
    try:
        return check_currency(value)
    except ValueError as e:
        raise BillingValidationError(str(e))


class InvoiceService:

    def __init__(self, store, bus, mailer=None, locks: Optional[KeyedLocks] = None,
                 settings: Optional[Settings] = None, clock=utc_now):
        self.store = store
        self.bus = bus
        self.mailer = mailer
        self.locks = locks or KeyedLocks()
        self.settings = settings or Settings()
        self.clock = clock

    # ------------------------------------------------------------------ helpers

    def _load(self, invoice_id: str, user_id: Optional[str], reader=None) -> Invoice:
        invoice = (reader or self.store).get_invoice(invoice_id)
        # Someone else's invoice looks exactly like a missing one
        if invoice is None or (user_id is not None and invoice.user_id != user_id):
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def _mutate(self, invoice_id: str, work):
        with self.locks.hold(invoice_id):
            return self.store.run_in_transaction(work)

    def view(self, invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
        shown = invoice.model_copy(deep=True)
        shown.status = invoice_state.effective_status(invoice, now or self.clock())
        return shown

    def publish_status(self, before: InvoiceStatus, invoice: Invoice, now: Optional[datetime] = None) -> None:
        if before == invoice.status:
            return
        status = invoice_state.effective_status(invoice, now or self.clock())
        self.bus.publish(events.INVOICE_STATUS_CHANGED, invoice.user_id, {"id": invoice.id, "status": status.value})

    def _dispatch_invoice_mail(self, invoice: Invoice, recipient: Optional[str] = None) -> None:
        if self.mailer is None:
            return
        try:
            self.mailer.dispatch_invoice(invoice, recipient)
        except Exception as e:
            # Creation/send already committed; mail is retried on its own
            logger.error("❌ Could not queue e-mail for invoice %s: %s", invoice.id, e)

    def _insert(self, invoice: Invoice, user_id: str, description: Optional[str] = None) -> Invoice:
        invoice_state.apply_totals(invoice)
        invoice.invoice_number = self.store.allocate_invoice_number(user_id)
        invoice.record(HistoryAction.CREATED, description or f"Invoice {invoice.invoice_number} created",
                       performed_by=user_id, at=invoice.created_at)
        self.store.save_invoice(invoice)
        return invoice

    # --------------------------------------------------------------- operations

    def create_invoice(self, user_id: str, data: InvoiceCreate) -> Invoice:
        now = self.clock()
        invoice_date = to_utc(data.invoice_date) or now
        due_date = to_utc(data.due_date) or add_days(invoice_date, self.settings.default_payment_terms_days)
        if due_date < invoice_date:
            raise BillingValidationError("dueDate must not be before invoiceDate")

        invoice = Invoice(
            id=new_invoice_id(),
            user_id=user_id,
            client_id=data.client_id,
            client_email=data.client_email,
            items=data.items,
            tax_rate=data.tax_rate,
            discount=data.discount,
            discount_type=data.discount_type,
            currency=normalise_currency(data.currency or self.settings.default_currency),
            invoice_date=invoice_date,
            due_date=due_date,
            notes=data.notes,
            terms=data.terms,
            share_id=new_share_id(),
            share_enabled=data.share_enabled,
            created_at=now,
            updated_at=now,
        )
        self._insert(invoice, user_id)

        logger.info("✅ Created invoice %s (%s) for user %s", invoice.id, invoice.invoice_number, user_id)
        self.bus.publish(events.INVOICE_CREATED, user_id, {"id": invoice.id})
        return self.view(invoice, now)

    def duplicate_invoice(self, invoice_id: str, user_id: str) -> Invoice:
        """
        Fresh DRAFT with the source's items, tax, discount, client and terms.
        Money state is not copied; the due date keeps the source's payment
        window counted from today.
        """
        source = self._load(invoice_id, user_id)
        now = self.clock()
        if source.due_date is not None:
            due_date = now + (to_utc(source.due_date) - to_utc(source.invoice_date))
        else:
            due_date = add_days(now, self.settings.default_payment_terms_days)

        invoice = Invoice(
            id=new_invoice_id(),
            user_id=user_id,
            client_id=source.client_id,
            client_email=source.client_email,
            items=[item.model_copy() for item in source.items],
            tax_rate=source.tax_rate,
            discount=source.discount,
            discount_type=source.discount_type,
            currency=source.currency,
            invoice_date=now,
            due_date=due_date,
            notes=source.notes,
            terms=source.terms,
            share_id=new_share_id(),
            created_at=now,
            updated_at=now,
        )
        self._insert(invoice, user_id, f"Invoice duplicated from {source.invoice_number or source.id}")

        logger.info("✅ Duplicated invoice %s as %s (%s)", source.id, invoice.id, invoice.invoice_number)
        self.bus.publish(events.INVOICE_CREATED, user_id, {"id": invoice.id, "duplicatedFrom": source.id})
        return self.view(invoice, now)

    def get_invoice(self, invoice_id: str, user_id: str) -> Invoice:
        return self.view(self._load(invoice_id, user_id))

    def list_invoices(self, user_id: str, status: Optional[InvoiceStatus] = None,
                      client_id: Optional[str] = None, schedule_id: Optional[str] = None) -> List[Invoice]:
        now = self.clock()
        shown = [self.view(i, now) for i in self.store.list_invoices(user_id, client_id=client_id)]
        if schedule_id is not None:
            shown = [i for i in shown if i.generated_from_schedule_id == schedule_id]
        if status is not None:
            shown = [i for i in shown if i.status == status]
        return shown

    def get_statistics(self, user_id: str) -> InvoiceStatistics:
        """Counts by effective status and per-currency revenue/pending/overdue."""
        invoices = self.list_invoices(user_id)
        by_status = Counter(i.status.value for i in invoices)
        totals = {}
        for invoice in invoices:
            if invoice.status == InvoiceStatus.CANCELLED:
                continue
            money = totals.setdefault(invoice.currency, InvoiceTotals())
            money.revenue += invoice.paid_amount
            if invoice.status in invoice_state.OPEN_STATUSES:
                money.pending += invoice.balance_due
            if invoice.status == InvoiceStatus.OVERDUE:
                money.overdue += invoice.balance_due
        return InvoiceStatistics(total=len(invoices), by_status=dict(by_status), by_currency=totals)

    def update_invoice(self, invoice_id: str, user_id: str, changes: InvoiceUpdate) -> Invoice:
        fields = {name: getattr(changes, name) for name in changes.model_fields_set}
        fields = {k: v for k, v in fields.items() if not (v is None and k in _NOT_NULLABLE)}
        if not fields:
            return self.get_invoice(invoice_id, user_id)

        def work(txn):
            invoice = self._load(invoice_id, user_id, txn)
            now = self.clock()
            financial = FINANCIAL_FIELDS.intersection(fields)
            if financial:
                invoice_state.ensure_editable(invoice)
            if invoice.status == InvoiceStatus.CANCELLED:
                raise StateConflictError("Cannot edit a cancelled invoice")

            for name, value in fields.items():
                if name == "currency":
                    value = normalise_currency(value)
                elif name in ("invoice_date", "due_date"):
                    value = to_utc(value)
                setattr(invoice, name, value)

            if invoice.due_date is not None and invoice.due_date < invoice.invoice_date:
                raise BillingValidationError("dueDate must not be before invoiceDate")
            if "due_date" in fields:
                invoice.overdue_notified_at = None
            if financial:
                invoice_state.apply_totals(invoice)

            invoice.updated_at = now
            invoice.record(HistoryAction.UPDATED, "Updated " + ", ".join(sorted(fields)),
                           performed_by=user_id, at=now)
            txn.put_invoice(invoice)
            return invoice, now

        invoice, now = self._mutate(invoice_id, work)
        self.bus.publish(events.INVOICE_UPDATED, user_id, {"id": invoice.id})
        return self.view(invoice, now)

    def send_invoice(self, invoice_id: str, user_id: str, recipient: Optional[str] = None) -> Invoice:
        def work(txn):
            invoice = self._load(invoice_id, user_id, txn)
            now = self.clock()
            before = invoice.status
            if not invoice_state.send(invoice, now, performed_by=user_id):
                invoice.updated_at = now
                invoice.record(HistoryAction.SENT, "Invoice re-sent", performed_by=user_id, at=now)
            txn.put_invoice(invoice)
            return before, invoice, now

        before, invoice, now = self._mutate(invoice_id, work)
        logger.info("✅ Invoice %s sent", invoice.id)
        self.bus.publish(events.INVOICE_SENT, user_id, {"id": invoice.id})
        self.publish_status(before, invoice, now)
        self._dispatch_invoice_mail(invoice, recipient)
        return self.view(invoice, now)

    def reopen_invoice(self, invoice_id: str, user_id: str, reason: str) -> Invoice:
        def work(txn):
            invoice = self._load(invoice_id, user_id, txn)
            now = self.clock()
            before = invoice.status
            if invoice_state.reopen(invoice, reason, now, performed_by=user_id):
                txn.put_invoice(invoice)
            return before, invoice, now

        before, invoice, now = self._mutate(invoice_id, work)
        logger.info("⚠️ Invoice %s reopened by %s: %s", invoice.id, user_id, reason)
        self.bus.publish(events.INVOICE_UPDATED, user_id, {"id": invoice.id})
        self.publish_status(before, invoice, now)
        return self.view(invoice, now)

    def cancel_invoice(self, invoice_id: str, user_id: str) -> Invoice:
        def work(txn):
            invoice = self._load(invoice_id, user_id, txn)
            now = self.clock()
            before = invoice.status
            changed = invoice_state.cancel(invoice, now, performed_by=user_id)
            if changed:
                txn.put_invoice(invoice)
            return before, invoice, now, changed

        before, invoice, now, changed = self._mutate(invoice_id, work)
        if changed:
            self.bus.publish(events.INVOICE_CANCELLED, user_id, {"id": invoice.id})
            self.publish_status(before, invoice, now)
        return self.view(invoice, now)

    def delete_invoice(self, invoice_id: str, user_id: str) -> None:
        def work(txn):
            self._load(invoice_id, user_id, txn)
            if txn.list_payments(invoice_id):
                raise StateConflictError("Invoice has payments; cancel it instead of deleting")
            txn.delete_invoice(invoice_id)

        self._mutate(invoice_id, work)
        logger.info("🗑️ Deleted invoice %s", invoice_id)
        self.bus.publish(events.INVOICE_DELETED, user_id, {"id": invoice_id})

    def update_share(self, invoice_id: str, user_id: str, enabled: bool, regenerate: bool = False) -> Invoice:
        def work(txn):
            invoice = self._load(invoice_id, user_id, txn)
            now = self.clock()
            if regenerate:
                invoice.share_id = new_share_id()
            invoice.share_enabled = enabled
            invoice.updated_at = now
            description = "Public link enabled" if enabled else "Public link disabled"
            if regenerate:
                description += " (new link)"
            invoice.record(HistoryAction.SHARE_UPDATED, description, performed_by=user_id, at=now)
            txn.put_invoice(invoice)
            return invoice, now

        invoice, now = self._mutate(invoice_id, work)
        self.bus.publish(events.INVOICE_SHARE_UPDATED, user_id, {"id": invoice.id})
        return self.view(invoice, now)

    def get_public_invoice(self, share_id: str) -> Invoice:
        """Share-link lookup. Unknown, disabled or rotated links all look the same."""
        found = self.store.find_invoice_by_share_id(share_id) if share_id else None
        if found is None or not found.share_enabled:
            raise NotFoundError("Invoice not found")

        def work(txn):
            invoice = txn.get_invoice(found.id)
            if invoice is None or not invoice.share_enabled or invoice.share_id != share_id:
                raise NotFoundError("Invoice not found")
            now = self.clock()
            before = invoice.status
            viewed = invoice_state.mark_viewed(invoice, now)
            if viewed:
                txn.put_invoice(invoice)
            return before, invoice, now, viewed

        before, invoice, now, viewed = self._mutate(found.id, work)
        if viewed:
            self.bus.publish(events.INVOICE_VIEWED, invoice.user_id, {"id": invoice.id})
            self.publish_status(before, invoice, now)
        return self.view(invoice, now)

    def sweep_overdue(self, now: Optional[datetime] = None) -> dict:
        """
        Announce invoices that have become overdue, once each. The stored
        status is left alone; overdueNotifiedAt marks the announcement.
        """
        now = now or self.clock()
        checked = notified = 0
        for candidate in self.store.list_open_invoices_past_due(now):
            checked += 1

            def work(txn, invoice_id=candidate.id):
                invoice = txn.get_invoice(invoice_id)
                if invoice is None or invoice.overdue_notified_at is not None:
                    return None
                if not invoice_state.is_overdue(invoice, now):
                    return None
                invoice.overdue_notified_at = now
                invoice.record(HistoryAction.REMINDER_SENT, "Invoice is overdue; payment reminder sent", at=now)
                txn.put_invoice(invoice)
                return invoice

            invoice = self._mutate(candidate.id, work)
            if invoice is None:
                continue

            notified += 1
            self.bus.publish(events.INVOICE_OVERDUE, invoice.user_id, {"id": invoice.id})
            self.bus.publish(events.INVOICE_STATUS_CHANGED, invoice.user_id,
                             {"id": invoice.id, "status": InvoiceStatus.OVERDUE.value})
            if self.mailer is not None:
                try:
                    self.mailer.dispatch_reminder(invoice)
                except Exception as e:
                    logger.error("❌ Could not queue reminder for invoice %s: %s", invoice.id, e)

        if notified:
            logger.info("✅ Overdue sweep: %d checked, %d newly overdue", checked, notified)
        return {"checked": checked, "notified": notified}
