"""
In-process BillingStore for local development and tests.

One RLock guards every collection, which gives the same all-or-nothing
behaviour the Firestore transactions give in production. Models are copied
on the way in and out so callers never share state with the store.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from reqResVal_models.billing_models import (
    Invoice,
    InvoiceStatus,
    Payment,
    RecurringSchedule,
    RecurringStatus,
)
from repositories.base_store import BillingStore, InvoiceTransaction, format_invoice_number
from services.errors import DuplicateOccurrenceError, NotFoundError, StateConflictError
from utils.date_utils import to_utc

_PAST_DUE_CANDIDATES = (InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.PARTIALLY_PAID)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class _MemoryTransaction(InvoiceTransaction):
    """Reads straight from the store; the caller holds the store lock throughout."""

    def __init__(self, store: "MemoryBillingStore"):
        super().__init__()
        self.store = store

    def _read_invoice(self, invoice_id):
        return _copy(self.store._invoices.get(invoice_id))

    def _read_payment(self, payment_id):
        return _copy(self.store._payments.get(payment_id))

    def _read_payment_by_transaction(self, transaction_id):
        return self.store.find_payment_by_transaction(transaction_id)

    def _read_payments(self, invoice_id):
        return self.store.list_payments(invoice_id)


class MemoryBillingStore(BillingStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._invoices: Dict[str, Invoice] = {}
        self._payments: Dict[str, Payment] = {}
        self._schedules: Dict[str, RecurringSchedule] = {}
        self._counters: Dict[str, int] = defaultdict(int)

    # Invoices

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return _copy(self._invoices.get(invoice_id))

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            self._invoices[invoice.id] = _copy(invoice)
            return _copy(invoice)

    def find_invoice_by_share_id(self, share_id: str) -> Optional[Invoice]:
        with self._lock:
            for invoice in self._invoices.values():
                if invoice.share_id == share_id:
                    return _copy(invoice)
        return None

    def list_invoices(self, user_id: str, status: Optional[InvoiceStatus] = None,
                      client_id: Optional[str] = None) -> List[Invoice]:
        with self._lock:
            found = [
                _copy(i) for i in self._invoices.values()
                if i.user_id == user_id
                and (status is None or i.status == status)
                and (client_id is None or i.client_id == client_id)
            ]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    def list_open_invoices_past_due(self, now: datetime) -> List[Invoice]:
        now = to_utc(now)
        with self._lock:
            return [
                _copy(i) for i in self._invoices.values()
                if i.status in _PAST_DUE_CANDIDATES and i.due_date is not None and to_utc(i.due_date) < now
            ]

    def allocate_invoice_number(self, user_id: str) -> str:
        with self._lock:
            self._counters[user_id] += 1
            return format_invoice_number(self._counters[user_id])

    # Payments

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._lock:
            return _copy(self._payments.get(payment_id))

    def list_payments(self, invoice_id: str) -> List[Payment]:
        with self._lock:
            found = [_copy(p) for p in self._payments.values() if p.invoice_id == invoice_id]
        return sorted(found, key=lambda p: p.created_at)

    def list_user_payments(self, user_id: str) -> List[Payment]:
        with self._lock:
            found = [_copy(p) for p in self._payments.values() if p.user_id == user_id]
        return sorted(found, key=lambda p: p.created_at)

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        with self._lock:
            for payment in self._payments.values():
                if payment.transaction_id == transaction_id:
                    return _copy(payment)
        return None

    def run_in_transaction(self, work):
        with self._lock:
            txn = _MemoryTransaction(self)
            result = work(txn)
            for payment in txn.payments.values():
                self._payments[payment.id] = _copy(payment)
            for invoice in txn.invoices.values():
                self._invoices[invoice.id] = _copy(invoice)
            for invoice_id in txn.deleted:
                self._invoices.pop(invoice_id, None)
            return result

    # Recurring schedules

    def get_schedule(self, schedule_id: str) -> Optional[RecurringSchedule]:
        with self._lock:
            return _copy(self._schedules.get(schedule_id))

    def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        with self._lock:
            self._schedules[schedule.id] = _copy(schedule)
            return _copy(schedule)

    def delete_schedule(self, schedule_id: str) -> None:
        with self._lock:
            self._schedules.pop(schedule_id, None)

    def list_schedules(self, user_id: str) -> List[RecurringSchedule]:
        with self._lock:
            found = [_copy(s) for s in self._schedules.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def list_due_schedules(self, now: datetime) -> List[RecurringSchedule]:
        now = to_utc(now)
        with self._lock:
            due = [
                _copy(s) for s in self._schedules.values()
                if s.status == RecurringStatus.ACTIVE and s.next_run_at is not None and to_utc(s.next_run_at) <= now
            ]
        return sorted(due, key=lambda s: s.next_run_at)

    def commit_occurrence(self, schedule: RecurringSchedule, expected_occurrences: int,
                          invoice: Invoice) -> Invoice:
        with self._lock:
            stored = self._schedules.get(schedule.id)
            if stored is None:
                raise NotFoundError(f"Recurring schedule {schedule.id} not found")
            if stored.occurrences_generated != expected_occurrences or invoice.id in self._invoices:
                raise DuplicateOccurrenceError(schedule.id, expected_occurrences + 1)
            if stored.status != RecurringStatus.ACTIVE:
                raise StateConflictError(f"Recurring schedule {schedule.id} is {stored.status.value}")

            created = _copy(invoice)
            self._counters[created.user_id] += 1
            created.invoice_number = format_invoice_number(self._counters[created.user_id])
            self._invoices[created.id] = created
            self._schedules[schedule.id] = _copy(schedule)
            return _copy(created)
