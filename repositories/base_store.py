"""
Persistence boundary for the billing engine.

Everything the services need from storage, and nothing more. Two methods
carry the engine's atomicity guarantees:

- run_in_transaction: read-modify-write of invoices and their payments.
  The work function reads through an InvoiceTransaction, stages its writes
  there, and the store commits them all or none. A writer on another
  replica that got there first makes the store re-run the work against
  fresh state, so paidAmount is never blind-overwritten.
- commit_occurrence: the advanced schedule and the invoice it generated are
  written together, keyed by (scheduleId, occurrence) so a replay of the same
  occurrence raises DuplicateOccurrenceError instead of creating a second
  invoice.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, TypeVar

from reqResVal_models.billing_models import Invoice, InvoiceStatus, Payment, RecurringSchedule

INVOICE_NUMBER_PREFIX = "INV-"

T = TypeVar("T")


def format_invoice_number(sequence: int) -> str:
    return f"{INVOICE_NUMBER_PREFIX}{sequence:05d}"


def occurrence_invoice_id(schedule_id: str, occurrence: int) -> str:
    """Deterministic invoice id for one occurrence of a schedule."""
    return f"{schedule_id}-{occurrence:04d}"


def to_document(model) -> dict:
    """camelCase dict with Decimals as strings and enums as their values."""
    def _convert(value):
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_convert(v) for v in value]
        return value

    return _convert(model.model_dump(by_alias=True))


class InvoiceTransaction(ABC):
    """
    Reads see committed state plus this transaction's own staged writes.
    Writes are staged and only reach the store when the work function
    returns. The work function may run more than once, so it must not
    publish events or send mail.
    """

    def __init__(self):
        self.invoices: Dict[str, Invoice] = {}
        self.payments: Dict[str, Payment] = {}
        self.deleted: Set[str] = set()

    @abstractmethod
    def _read_invoice(self, invoice_id: str) -> Optional[Invoice]: ...

    @abstractmethod
    def _read_payment(self, payment_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def _read_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def _read_payments(self, invoice_id: str) -> List[Payment]: ...

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        if invoice_id in self.deleted:
            return None
        if invoice_id in self.invoices:
            return self.invoices[invoice_id].model_copy(deep=True)
        return self._read_invoice(invoice_id)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        if payment_id in self.payments:
            return self.payments[payment_id].model_copy(deep=True)
        return self._read_payment(payment_id)

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.transaction_id == transaction_id:
                return payment.model_copy(deep=True)
        return self._read_payment_by_transaction(transaction_id)

    def list_payments(self, invoice_id: str) -> List[Payment]:
        found = {p.id: p for p in self._read_payments(invoice_id)}
        found.update({p.id: p.model_copy(deep=True) for p in self.payments.values() if p.invoice_id == invoice_id})
        return sorted(found.values(), key=lambda p: p.created_at)

    def put_invoice(self, invoice: Invoice) -> None:
        self.deleted.discard(invoice.id)
        self.invoices[invoice.id] = invoice.model_copy(deep=True)

    def put_payment(self, payment: Payment) -> None:
        self.payments[payment.id] = payment.model_copy(deep=True)

    def delete_invoice(self, invoice_id: str) -> None:
        self.invoices.pop(invoice_id, None)
        self.deleted.add(invoice_id)


class BillingStore(ABC):

    # Invoices
    @abstractmethod
    def get_invoice(self, invoice_id: str) -> Optional[Invoice]: ...

    @abstractmethod
    def save_invoice(self, invoice: Invoice) -> Invoice:
        """Write a brand-new invoice. Changes to existing ones go through run_in_transaction."""

    @abstractmethod
    def find_invoice_by_share_id(self, share_id: str) -> Optional[Invoice]: ...

    @abstractmethod
    def list_invoices(self, user_id: str, status: Optional[InvoiceStatus] = None,
                      client_id: Optional[str] = None) -> List[Invoice]: ...

    @abstractmethod
    def list_open_invoices_past_due(self, now: datetime) -> List[Invoice]: ...

    @abstractmethod
    def allocate_invoice_number(self, user_id: str) -> str: ...

    # Payments
    @abstractmethod
    def get_payment(self, payment_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def list_payments(self, invoice_id: str) -> List[Payment]: ...

    @abstractmethod
    def list_user_payments(self, user_id: str) -> List[Payment]: ...

    @abstractmethod
    def find_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def run_in_transaction(self, work: Callable[[InvoiceTransaction], T]) -> T:
        """
        Run work(txn) and commit its staged invoice and payment writes
        atomically. Exceptions raised by work roll everything back and
        propagate unchanged.
        """

    # Recurring schedules
    @abstractmethod
    def get_schedule(self, schedule_id: str) -> Optional[RecurringSchedule]: ...

    @abstractmethod
    def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule: ...

    @abstractmethod
    def delete_schedule(self, schedule_id: str) -> None: ...

    @abstractmethod
    def list_schedules(self, user_id: str) -> List[RecurringSchedule]: ...

    @abstractmethod
    def list_due_schedules(self, now: datetime) -> List[RecurringSchedule]: ...

    @abstractmethod
    def commit_occurrence(self, schedule: RecurringSchedule, expected_occurrences: int,
                          invoice: Invoice) -> Invoice:
        """
        Atomically persist `schedule` (already advanced) and the generated
        invoice, assigning the invoice number. Raises DuplicateOccurrenceError
        when the stored counter is no longer `expected_occurrences` or the
        occurrence invoice already exists.
        """
