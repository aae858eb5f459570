"""
Firestore-backed BillingStore.

Collections: invoices, payments, recurring_schedules, counters. Documents
are camelCase with Decimals stored as strings. Multi-document writes go
through Firestore transactions so that two replicas racing on one schedule
occurrence (or one invoice's payments) cannot both win.
"""

import logging
from datetime import datetime
from typing import List, Optional

from google.cloud import firestore

from reqResVal_models.billing_models import (
    Invoice,
    InvoiceStatus,
    Payment,
    RecurringSchedule,
    RecurringStatus,
)
from repositories.base_store import BillingStore, InvoiceTransaction, format_invoice_number, to_document
from services.errors import DuplicateOccurrenceError, NotFoundError, StateConflictError

logger = logging.getLogger(__name__)

INVOICES = "invoices"
PAYMENTS = "payments"
SCHEDULES = "recurring_schedules"
COUNTERS = "counters"

_PAST_DUE_CANDIDATES = [InvoiceStatus.SENT.value, InvoiceStatus.VIEWED.value, InvoiceStatus.PARTIALLY_PAID.value]


def _next_number(transaction, counter_ref) -> tuple:
    snapshot = counter_ref.get(transaction=transaction)
    current = (snapshot.to_dict() or {}).get("invoiceNumber", 0) if snapshot.exists else 0
    return current + 1, format_invoice_number(current + 1)


class _FirestoreTransaction(InvoiceTransaction):
    """Every read is made inside the Firestore transaction, so a concurrent commit forces a retry."""

    def __init__(self, store: "FirestoreBillingStore", transaction):
        super().__init__()
        self.store = store
        self.transaction = transaction

    def _read_invoice(self, invoice_id):
        doc = self.store._doc(INVOICES, invoice_id).get(transaction=self.transaction)
        return Invoice.model_validate(doc.to_dict()) if doc.exists else None

    def _read_payment(self, payment_id):
        doc = self.store._doc(PAYMENTS, payment_id).get(transaction=self.transaction)
        return Payment.model_validate(doc.to_dict()) if doc.exists else None

    def _read_payment_by_transaction(self, transaction_id):
        query = self.store.db.collection(PAYMENTS).where("transactionId", "==", transaction_id).limit(1)
        for doc in query.stream(transaction=self.transaction):
            return Payment.model_validate(doc.to_dict())
        return None

    def _read_payments(self, invoice_id):
        query = self.store.db.collection(PAYMENTS).where("invoiceId", "==", invoice_id)
        return [Payment.model_validate(doc.to_dict()) for doc in query.stream(transaction=self.transaction)]


class FirestoreBillingStore(BillingStore):

    def __init__(self, client):
        self.db = client

    def _doc(self, collection: str, doc_id: str):
        return self.db.collection(collection).document(doc_id)

    # Invoices

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        doc = self._doc(INVOICES, invoice_id).get()
        return Invoice.model_validate(doc.to_dict()) if doc.exists else None

    def save_invoice(self, invoice: Invoice) -> Invoice:
        self._doc(INVOICES, invoice.id).set(to_document(invoice))
        return invoice

    def find_invoice_by_share_id(self, share_id: str) -> Optional[Invoice]:
        query = self.db.collection(INVOICES).where("shareId", "==", share_id).limit(1)
        for doc in query.stream():
            return Invoice.model_validate(doc.to_dict())
        return None

    def list_invoices(self, user_id: str, status: Optional[InvoiceStatus] = None,
                      client_id: Optional[str] = None) -> List[Invoice]:
        query = self.db.collection(INVOICES).where("userId", "==", user_id)
        if status is not None:
            query = query.where("status", "==", status.value)
        if client_id is not None:
            query = query.where("clientId", "==", client_id)
        invoices = [Invoice.model_validate(doc.to_dict()) for doc in query.stream()]
        return sorted(invoices, key=lambda i: i.created_at, reverse=True)

    def list_open_invoices_past_due(self, now: datetime) -> List[Invoice]:
        query = (
            self.db.collection(INVOICES)
            .where("status", "in", _PAST_DUE_CANDIDATES)
            .where("dueDate", "<", now)
        )
        return [Invoice.model_validate(doc.to_dict()) for doc in query.stream()]

    def allocate_invoice_number(self, user_id: str) -> str:
        counter_ref = self._doc(COUNTERS, user_id)

        @firestore.transactional
        def _allocate(transaction):
            sequence, number = _next_number(transaction, counter_ref)
            transaction.set(counter_ref, {"invoiceNumber": sequence}, merge=True)
            return number

        return _allocate(self.db.transaction())

    # Payments

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        doc = self._doc(PAYMENTS, payment_id).get()
        return Payment.model_validate(doc.to_dict()) if doc.exists else None

    def list_payments(self, invoice_id: str) -> List[Payment]:
        query = self.db.collection(PAYMENTS).where("invoiceId", "==", invoice_id)
        payments = [Payment.model_validate(doc.to_dict()) for doc in query.stream()]
        return sorted(payments, key=lambda p: p.created_at)

    def list_user_payments(self, user_id: str) -> List[Payment]:
        query = self.db.collection(PAYMENTS).where("userId", "==", user_id)
        payments = [Payment.model_validate(doc.to_dict()) for doc in query.stream()]
        return sorted(payments, key=lambda p: p.created_at)

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        query = self.db.collection(PAYMENTS).where("transactionId", "==", transaction_id).limit(1)
        for doc in query.stream():
            return Payment.model_validate(doc.to_dict())
        return None

    def run_in_transaction(self, work):
        @firestore.transactional
        def _run(transaction):
            # A fresh view per attempt; Firestore re-runs this on contention
            txn = _FirestoreTransaction(self, transaction)
            result = work(txn)
            for payment in txn.payments.values():
                transaction.set(self._doc(PAYMENTS, payment.id), to_document(payment))
            for invoice in txn.invoices.values():
                transaction.set(self._doc(INVOICES, invoice.id), to_document(invoice))
            for invoice_id in txn.deleted:
                transaction.delete(self._doc(INVOICES, invoice_id))
            return result

        return _run(self.db.transaction())

    # Recurring schedules

    def get_schedule(self, schedule_id: str) -> Optional[RecurringSchedule]:
        doc = self._doc(SCHEDULES, schedule_id).get()
        return RecurringSchedule.model_validate(doc.to_dict()) if doc.exists else None

    def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        self._doc(SCHEDULES, schedule.id).set(to_document(schedule))
        return schedule

    def delete_schedule(self, schedule_id: str) -> None:
        self._doc(SCHEDULES, schedule_id).delete()

    def list_schedules(self, user_id: str) -> List[RecurringSchedule]:
        query = self.db.collection(SCHEDULES).where("userId", "==", user_id)
        schedules = [RecurringSchedule.model_validate(doc.to_dict()) for doc in query.stream()]
        return sorted(schedules, key=lambda s: s.created_at, reverse=True)

    def list_due_schedules(self, now: datetime) -> List[RecurringSchedule]:
        query = (
            self.db.collection(SCHEDULES)
            .where("status", "==", RecurringStatus.ACTIVE.value)
            .where("nextRunAt", "<=", now)
        )
        schedules = [RecurringSchedule.model_validate(doc.to_dict()) for doc in query.stream()]
        return sorted(schedules, key=lambda s: s.next_run_at)

    def commit_occurrence(self, schedule: RecurringSchedule, expected_occurrences: int,
                          invoice: Invoice) -> Invoice:
        schedule_ref = self._doc(SCHEDULES, schedule.id)
        invoice_ref = self._doc(INVOICES, invoice.id)
        counter_ref = self._doc(COUNTERS, invoice.user_id)

        @firestore.transactional
        def _commit(transaction):
            # All reads happen before any write inside a Firestore transaction
            stored = schedule_ref.get(transaction=transaction)
            existing = invoice_ref.get(transaction=transaction)
            if not stored.exists:
                raise NotFoundError(f"Recurring schedule {schedule.id} not found")
            data = stored.to_dict()
            if data.get("occurrencesGenerated", 0) != expected_occurrences or existing.exists:
                raise DuplicateOccurrenceError(schedule.id, expected_occurrences + 1)
            if data.get("status") != RecurringStatus.ACTIVE.value:
                raise StateConflictError(f"Recurring schedule {schedule.id} is {data.get('status')}")

            sequence, number = _next_number(transaction, counter_ref)
            created = invoice.model_copy(deep=True)
            created.invoice_number = number
            transaction.create(invoice_ref, to_document(created))
            transaction.set(counter_ref, {"invoiceNumber": sequence}, merge=True)
            transaction.set(schedule_ref, to_document(schedule))
            return created

        created = _commit(self.db.transaction())
        logger.info("✅ Committed occurrence %s of schedule %s as %s",
                    expected_occurrences + 1, schedule.id, created.invoice_number)
        return created
