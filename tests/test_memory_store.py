from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, item, make_invoice
from reqResVal_models.billing_models import (
    InvoiceStatus,
    Payment,
    RecurrenceFrequency,
    RecurringSchedule,
    RecurringStatus,
)
from repositories.base_store import format_invoice_number, occurrence_invoice_id, to_document
from services import invoice_state
from services.errors import DuplicateOccurrenceError, NotFoundError, StateConflictError


def schedule(**overrides):
    data = dict(id="rec_1", user_id="user-1", client_id="client-1", items=[item()],
                frequency=RecurrenceFrequency.MONTHLY, start_date=NOW, next_run_at=NOW)
    data.update(overrides)
    return RecurringSchedule(**data)


def test_helpers():
    assert format_invoice_number(7) == "INV-00007"
    assert occurrence_invoice_id("rec_1", 3) == "rec_1-0003"


def test_document_keeps_money_exact():
    doc = to_document(make_invoice())
    assert doc["totalAmount"] == "90.00"
    assert doc["status"] == "DRAFT"
    assert doc["items"][0]["rate"] == "50.00"


def test_invoice_numbers_are_per_user(store):
    assert store.allocate_invoice_number("a") == "INV-00001"
    assert store.allocate_invoice_number("a") == "INV-00002"
    assert store.allocate_invoice_number("b") == "INV-00001"


def test_returned_models_are_copies(store):
    store.save_invoice(make_invoice())
    loaded = store.get_invoice("inv_1")
    loaded.notes = "changed"
    assert store.get_invoice("inv_1").notes is None


def test_past_due_only_lists_open_invoices(store):
    sent = make_invoice(id="inv_sent")
    invoice_state.send(sent, NOW)
    store.save_invoice(sent)
    store.save_invoice(make_invoice(id="inv_draft"))

    later = sent.due_date + timedelta(days=1)
    assert [i.id for i in store.list_open_invoices_past_due(later)] == ["inv_sent"]
    assert store.list_open_invoices_past_due(NOW) == []


def test_due_schedules_sorted_and_active_only(store):
    store.save_schedule(schedule(id="rec_late", next_run_at=NOW - timedelta(hours=1)))
    store.save_schedule(schedule(id="rec_early", next_run_at=NOW - timedelta(days=1)))
    store.save_schedule(schedule(id="rec_paused", status=RecurringStatus.PAUSED))
    store.save_schedule(schedule(id="rec_future", next_run_at=NOW + timedelta(days=1)))
    assert [s.id for s in store.list_due_schedules(NOW)] == ["rec_early", "rec_late"]


class TestCommitOccurrence:

    def _occurrence(self, sched):
        invoice = make_invoice(id=occurrence_invoice_id(sched.id, 1), generated_from_schedule_id=sched.id,
                               occurrence_number=1)
        advanced = sched.model_copy(update={"occurrences_generated": 1})
        return advanced, invoice

    def test_commit_numbers_and_advances(self, store):
        sched = schedule()
        store.save_schedule(sched)
        advanced, invoice = self._occurrence(sched)

        created = store.commit_occurrence(advanced, 0, invoice)
        assert created.invoice_number == "INV-00001"
        assert store.get_schedule(sched.id).occurrences_generated == 1
        assert store.get_invoice(invoice.id).total_amount == Decimal("90.00")

    def test_second_commit_is_duplicate(self, store):
        sched = schedule()
        store.save_schedule(sched)
        advanced, invoice = self._occurrence(sched)
        store.commit_occurrence(advanced, 0, invoice)

        with pytest.raises(DuplicateOccurrenceError):
            store.commit_occurrence(advanced, 0, invoice)
        assert len(store.list_invoices("user-1")) == 1

    def test_paused_schedule_is_conflict(self, store):
        sched = schedule(status=RecurringStatus.PAUSED)
        store.save_schedule(sched)
        advanced, invoice = self._occurrence(sched)
        with pytest.raises(StateConflictError):
            store.commit_occurrence(advanced, 0, invoice)

    def test_missing_schedule(self, store):
        advanced, invoice = self._occurrence(schedule())
        with pytest.raises(NotFoundError):
            store.commit_occurrence(advanced, 0, invoice)


def test_list_invoices_filters(store):
    store.save_invoice(make_invoice(id="inv_a", client_id="c1"))
    store.save_invoice(make_invoice(id="inv_b", client_id="c2", user_id="user-2"))
    cancelled = make_invoice(id="inv_c", client_id="c1")
    invoice_state.cancel(cancelled, NOW)
    store.save_invoice(cancelled)

    assert {i.id for i in store.list_invoices("user-1", client_id="c1")} == {"inv_a", "inv_c"}
    assert [i.id for i in store.list_invoices("user-1", status=InvoiceStatus.CANCELLED)] == ["inv_c"]


class TestTransactions:

    def _payment(self, **overrides):
        data = dict(id="pay_1", invoice_id="inv_1", user_id="user-1", amount=Decimal("10"),
                    transaction_id="pi_1", created_at=NOW)
        data.update(overrides)
        return Payment(**data)

    def test_staged_writes_commit_together(self, store):
        store.save_invoice(make_invoice())

        def work(txn):
            invoice = txn.get_invoice("inv_1")
            invoice.notes = "paid by card"
            txn.put_invoice(invoice)
            txn.put_payment(self._payment())
            return "done"

        assert store.run_in_transaction(work) == "done"
        assert store.get_invoice("inv_1").notes == "paid by card"
        assert store.get_payment("pay_1").invoice_id == "inv_1"

    def test_failure_rolls_back(self, store):
        store.save_invoice(make_invoice())

        def work(txn):
            invoice = txn.get_invoice("inv_1")
            invoice.notes = "changed"
            txn.put_invoice(invoice)
            txn.put_payment(self._payment())
            raise StateConflictError("nope")

        with pytest.raises(StateConflictError):
            store.run_in_transaction(work)
        assert store.get_invoice("inv_1").notes is None
        assert store.get_payment("pay_1") is None

    def test_reads_see_staged_writes(self, store):
        store.save_invoice(make_invoice())
        store.run_in_transaction(lambda txn: txn.put_payment(self._payment(created_at=NOW - timedelta(days=1))))

        def work(txn):
            txn.put_payment(self._payment(id="pay_2", transaction_id="pi_2"))
            txn.delete_invoice("inv_1")
            return (
                [p.id for p in txn.list_payments("inv_1")],
                txn.find_payment_by_transaction("pi_2").id,
                txn.get_invoice("inv_1"),
            )

        listed, found, deleted = store.run_in_transaction(work)
        assert listed == ["pay_1", "pay_2"]
        assert found == "pay_2"
        assert deleted is None
        assert store.get_invoice("inv_1") is None


def test_user_payments_and_schedule_delete(store):
    store.run_in_transaction(lambda txn: txn.put_payment(
        Payment(id="pay_a", invoice_id="inv_1", user_id="user-1", amount=Decimal("5"))))
    store.run_in_transaction(lambda txn: txn.put_payment(
        Payment(id="pay_b", invoice_id="inv_2", user_id="user-2", amount=Decimal("5"))))
    assert [p.id for p in store.list_user_payments("user-1")] == ["pay_a"]

    store.save_schedule(schedule())
    store.delete_schedule("rec_1")
    assert store.get_schedule("rec_1") is None
