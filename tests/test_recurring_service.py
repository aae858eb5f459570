from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import item
from reqResVal_models.billing_models import (
    InvoiceStatus,
    RecurrenceFrequency,
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
    RecurringStatus,
)
from services.errors import BillingValidationError, DuplicateOccurrenceError, NotFoundError, StateConflictError

USER = "user-1"


def at(year, month, day, hour=9):
    return datetime(year, month, day, hour, 0, tzinfo=timezone.utc)


def create(recurring_service, **overrides):
    data = dict(client_id="client-1", client_email="client@example.com", items=[item()],
                tax_rate=Decimal("10"), frequency=RecurrenceFrequency.MONTHLY,
                start_date=at(2025, 1, 31), due_in_days=14)
    data.update(overrides)
    return recurring_service.create_schedule(USER, RecurringScheduleCreate(**data))


class TestMonthlyRun:

    def test_month_end_run_generates_and_advances(self, recurring_service, clock, store, bus):
        schedule = create(recurring_service)
        assert schedule.next_run_at == at(2025, 1, 31)

        clock.now = at(2025, 1, 31, hour=10)
        summary = recurring_service.process_due()
        assert summary.generated == 1

        invoice = store.get_invoice(summary.invoice_ids[0])
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.generated_from_schedule_id == schedule.id
        assert invoice.occurrence_number == 1
        assert invoice.invoice_number == "INV-00001"
        assert invoice.total_amount == Decimal("110.00")
        assert invoice.due_date == clock.now + timedelta(days=14)

        stored = store.get_schedule(schedule.id)
        assert stored.occurrences_generated == 1
        assert stored.last_run_at == clock.now
        assert stored.next_run_at == at(2025, 2, 28)
        assert "recurring.generated" in bus.types()

    def test_not_due_yet(self, recurring_service, clock):
        create(recurring_service)
        clock.now = at(2025, 1, 30)
        assert recurring_service.process_due().generated == 0

    def test_downtime_generates_once_then_catches_up_to_future(self, recurring_service, clock, store):
        schedule = create(recurring_service)
        clock.now = at(2025, 4, 10)
        summary = recurring_service.process_due()
        assert summary.generated == 1
        assert store.get_schedule(schedule.id).next_run_at == at(2025, 4, 30)
        assert recurring_service.process_due().generated == 0

    def test_max_occurrences_exhausts_schedule(self, recurring_service, clock, store):
        schedule = create(recurring_service, max_occurrences=3)
        for month, day in ((1, 31), (2, 28), (3, 31)):
            clock.now = at(2025, month, day, hour=12)
            assert recurring_service.process_due().generated == 1

        stored = store.get_schedule(schedule.id)
        assert stored.occurrences_generated == 3
        assert stored.next_run_at is None
        assert stored.exhausted is True
        assert stored.status == RecurringStatus.ACTIVE

        clock.now = at(2025, 6, 1)
        assert recurring_service.process_due().processed == 0
        with pytest.raises(StateConflictError):
            recurring_service.run_now(schedule.id, USER)

    def test_end_date_stops_generation(self, recurring_service, clock, store):
        schedule = create(recurring_service, start_date=at(2025, 1, 15), end_date=at(2025, 2, 20))
        clock.now = at(2025, 1, 15, hour=12)
        recurring_service.process_due()
        clock.now = at(2025, 2, 15, hour=12)
        recurring_service.process_due()
        assert store.get_schedule(schedule.id).next_run_at is None
        assert len(recurring_service.list_schedules(USER)) == 1


class TestIdempotency:

    def test_replayed_commit_is_a_duplicate(self, recurring_service, clock, store):
        schedule = create(recurring_service)
        clock.now = at(2025, 1, 31, hour=10)
        stale = store.get_schedule(schedule.id)
        recurring_service.process_due()

        invoice = recurring_service.build_occurrence(stale, clock.now)
        advanced = recurring_service.advance(stale, clock.now)
        with pytest.raises(DuplicateOccurrenceError):
            store.commit_occurrence(advanced, stale.occurrences_generated, invoice)
        assert len(store.list_invoices(USER)) == 1

    def test_occurrence_ids_are_deterministic(self, recurring_service, clock):
        schedule = create(recurring_service)
        first = recurring_service.build_occurrence(schedule, clock.now)
        second = recurring_service.build_occurrence(schedule, clock.now)
        assert first.id == second.id == f"{schedule.id}-0001"

    def test_duplicate_during_scan_is_skipped(self, recurring_service, clock, store):
        create(recurring_service)
        clock.now = at(2025, 1, 31, hour=10)
        with patch.object(store, "commit_occurrence", side_effect=DuplicateOccurrenceError("rec_x", 1)):
            summary = recurring_service.process_due()
        assert (summary.generated, summary.skipped, summary.failed) == (0, 1, 0)

    def test_unexpected_failure_is_counted_and_retried(self, recurring_service, clock, store):
        schedule = create(recurring_service)
        clock.now = at(2025, 1, 31, hour=10)
        with patch.object(store, "commit_occurrence", side_effect=RuntimeError("store down")):
            summary = recurring_service.process_due()
        assert summary.failed == 1
        assert store.get_schedule(schedule.id).occurrences_generated == 0

        assert recurring_service.process_due().generated == 1


class TestAutoSend:

    def test_auto_send_sends_and_mails(self, recurring_service, clock, store, mailer, bus):
        create(recurring_service, auto_send=True)
        clock.now = at(2025, 1, 31, hour=10)
        summary = recurring_service.process_due()

        invoice = store.get_invoice(summary.invoice_ids[0])
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.sent_at == clock.now
        mailer.dispatch_invoice.assert_called_once()
        assert "invoice.sent" in bus.types()

    def test_mail_failure_keeps_the_invoice(self, recurring_service, clock, store, mailer):
        schedule = create(recurring_service, auto_send=True)
        mailer.dispatch_invoice.side_effect = RuntimeError("postmark down")
        clock.now = at(2025, 1, 31, hour=10)
        summary = recurring_service.process_due()

        assert summary.generated == 1
        assert store.get_schedule(schedule.id).occurrences_generated == 1


class TestLifecycle:

    def test_run_now_ahead_of_schedule_consumes_occurrence(self, recurring_service, clock, store):
        schedule = create(recurring_service, start_date=at(2025, 2, 10))
        invoice = recurring_service.run_now(schedule.id, USER)
        assert invoice.occurrence_number == 1
        assert store.get_schedule(schedule.id).next_run_at == at(2025, 3, 10)

    def test_paused_schedule_is_not_run(self, recurring_service, clock, store):
        schedule = create(recurring_service)
        recurring_service.pause_schedule(schedule.id, USER)
        clock.now = at(2025, 2, 5)
        assert recurring_service.process_due().processed == 0
        with pytest.raises(StateConflictError):
            recurring_service.run_now(schedule.id, USER)

    def test_resume_skips_missed_periods(self, recurring_service, clock):
        schedule = create(recurring_service)
        recurring_service.pause_schedule(schedule.id, USER)
        clock.now = at(2025, 3, 10)
        resumed = recurring_service.resume_schedule(schedule.id, USER)
        assert resumed.status == RecurringStatus.ACTIVE
        assert resumed.next_run_at == at(2025, 3, 31)

    def test_cancelled_is_final(self, recurring_service):
        schedule = create(recurring_service)
        cancelled = recurring_service.cancel_schedule(schedule.id, USER)
        assert cancelled.next_run_at is None
        with pytest.raises(StateConflictError):
            recurring_service.resume_schedule(schedule.id, USER)
        with pytest.raises(StateConflictError):
            recurring_service.update_schedule(schedule.id, USER, RecurringScheduleUpdate(notes="x"))

    def test_changing_frequency_recomputes_next_run(self, recurring_service, clock):
        schedule = create(recurring_service, start_date=at(2025, 2, 1))
        updated = recurring_service.update_schedule(
            schedule.id, USER, RecurringScheduleUpdate(frequency=RecurrenceFrequency.WEEKLY,
                                                       start_date=at(2025, 1, 20))
        )
        assert updated.next_run_at == at(2025, 1, 20)

    def test_delete_keeps_generated_invoices(self, recurring_service, clock, store, bus):
        schedule = create(recurring_service)
        clock.now = at(2025, 1, 31, hour=10)
        generated = recurring_service.run_now(schedule.id, USER)

        recurring_service.delete_schedule(schedule.id, USER)

        assert store.get_schedule(schedule.id) is None
        assert store.get_invoice(generated.id).generated_from_schedule_id == schedule.id
        assert bus.published[-1] == ("recurring.deleted", USER, {"id": schedule.id})
        with pytest.raises(NotFoundError):
            recurring_service.get_schedule(schedule.id, USER)

    def test_delete_other_users_schedule(self, recurring_service, store):
        schedule = create(recurring_service)
        with pytest.raises(NotFoundError):
            recurring_service.delete_schedule(schedule.id, "someone-else")
        assert store.get_schedule(schedule.id) is not None

    def test_schedule_deleted_during_scan_is_skipped(self, recurring_service, clock, store):
        schedule = create(recurring_service)
        clock.now = at(2025, 1, 31, hour=10)
        due = store.list_due_schedules(clock.now)
        store.delete_schedule(schedule.id)

        with patch.object(store, "list_due_schedules", return_value=due):
            summary = recurring_service.process_due()
        assert (summary.processed, summary.skipped, summary.failed) == (1, 1, 0)

    def test_other_user_cannot_see_schedule(self, recurring_service):
        schedule = create(recurring_service)
        with pytest.raises(NotFoundError):
            recurring_service.get_schedule(schedule.id, "intruder")


class TestValidation:

    def test_end_before_start(self, recurring_service):
        with pytest.raises(BillingValidationError):
            create(recurring_service, end_date=at(2025, 1, 1))

    def test_max_below_generated(self, recurring_service, clock):
        schedule = create(recurring_service)
        clock.now = at(2025, 3, 1)
        recurring_service.run_now(schedule.id, USER)
        recurring_service.run_now(schedule.id, USER)
        with pytest.raises(BillingValidationError):
            recurring_service.update_schedule(schedule.id, USER, RecurringScheduleUpdate(max_occurrences=1))

    def test_percentage_discount_over_100(self, recurring_service):
        with pytest.raises(BillingValidationError):
            create(recurring_service, discount=Decimal("150"), discount_type="PERCENTAGE")
