"""
Recurring schedule runner.

A due scan turns each ACTIVE schedule whose nextRunAt has passed into one
invoice. The invoice and the advanced schedule are committed together by
the store; the invoice id is derived from (scheduleId, occurrence), so a
retried or concurrent run of the same occurrence is detected as a
duplicate and skipped instead of billing the client twice.

Side effects that can fail independently (auto-send e-mail, change events)
happen only after the commit.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from reqResVal_models.billing_models import (
    RECURRENCE_FIELDS,
    HistoryAction,
    Invoice,
    RecurringSchedule,
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
    RecurringStatus,
    RunSummary,
    utc_now,
)
from repositories.base_store import occurrence_invoice_id
from services import event_bus as events
from services import invoice_state, recurrence
from services.errors import (
    BillingValidationError,
    DuplicateOccurrenceError,
    NotFoundError,
    StateConflictError,
)
from services.invoice_locks import KeyedLocks
from services.invoice_service import new_share_id, normalise_currency
from services.totals_service import compute_totals
from settings import Settings
from utils.date_utils import add_days, to_utc

logger = logging.getLogger(__name__)

_NOT_NULLABLE = {"client_id", "items", "tax_rate", "discount", "discount_type", "currency",
                 "due_in_days", "frequency", "interval", "start_date", "auto_send"}


def new_schedule_id() -> str:
    return f"rec_{uuid4().hex[:12]}"


def validate_schedule(schedule: RecurringSchedule) -> None:
    if not schedule.client_id:
        raise BillingValidationError("A recurring schedule needs a client")
    if not schedule.items:
        raise BillingValidationError("A recurring schedule needs at least one item")
    if schedule.interval < 1:
        raise BillingValidationError("interval must be at least 1")
    if schedule.max_occurrences is not None and schedule.max_occurrences < 1:
        raise BillingValidationError("maxOccurrences must be at least 1")
    if schedule.max_occurrences is not None and schedule.max_occurrences < schedule.occurrences_generated:
        raise BillingValidationError(
            f"maxOccurrences cannot be lower than the {schedule.occurrences_generated} already generated"
        )
    if schedule.end_date is not None and to_utc(schedule.end_date) < to_utc(schedule.start_date):
        raise BillingValidationError("endDate must not be before startDate")
    if schedule.due_in_days < 0:
        raise BillingValidationError("dueInDays must not be negative")
    compute_totals(schedule.items, schedule.tax_rate, schedule.discount, schedule.discount_type)


class RecurringService:

    def __init__(self, store, bus, mailer=None, locks: Optional[KeyedLocks] = None,
                 settings: Optional[Settings] = None, clock=utc_now):
        self.store = store
        self.bus = bus
        self.mailer = mailer
        self.locks = locks or KeyedLocks()
        self.settings = settings or Settings()
        self.clock = clock

    def _load(self, schedule_id: str, user_id: Optional[str]) -> RecurringSchedule:
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None or (user_id is not None and schedule.user_id != user_id):
            raise NotFoundError(f"Recurring schedule {schedule_id} not found")
        return schedule

    # ------------------------------------------------------------------- CRUD

    def create_schedule(self, user_id: str, data: RecurringScheduleCreate) -> RecurringSchedule:
        now = self.clock()
        schedule = RecurringSchedule(
            id=new_schedule_id(),
            user_id=user_id,
            client_id=data.client_id,
            client_email=data.client_email,
            items=data.items,
            tax_rate=data.tax_rate,
            discount=data.discount,
            discount_type=data.discount_type,
            currency=normalise_currency(data.currency or self.settings.default_currency),
            notes=data.notes,
            terms=data.terms,
            due_in_days=data.due_in_days,
            frequency=data.frequency,
            interval=data.interval,
            start_date=to_utc(data.start_date),
            end_date=to_utc(data.end_date),
            max_occurrences=data.max_occurrences,
            auto_send=data.auto_send,
            created_at=now,
            updated_at=now,
        )
        validate_schedule(schedule)
        schedule.next_run_at = recurrence.initial_run_at(schedule)
        self.store.save_schedule(schedule)

        logger.info("✅ Created %s schedule %s (next run %s)", schedule.frequency.value, schedule.id,
                    schedule.next_run_at)
        self.bus.publish(events.RECURRING_CREATED, user_id, {"id": schedule.id})
        return schedule

    def get_schedule(self, schedule_id: str, user_id: str) -> RecurringSchedule:
        return self._load(schedule_id, user_id)

    def list_schedules(self, user_id: str) -> List[RecurringSchedule]:
        return self.store.list_schedules(user_id)

    def update_schedule(self, schedule_id: str, user_id: str, changes: RecurringScheduleUpdate) -> RecurringSchedule:
        fields = {name: getattr(changes, name) for name in changes.model_fields_set}
        fields = {k: v for k, v in fields.items() if not (v is None and k in _NOT_NULLABLE)}

        with self.locks.hold(schedule_id):
            schedule = self._load(schedule_id, user_id)
            if schedule.status == RecurringStatus.CANCELLED:
                raise StateConflictError("Cannot edit a cancelled recurring schedule")
            if not fields:
                return schedule
            now = self.clock()
            for name, value in fields.items():
                if name == "currency":
                    value = normalise_currency(value)
                elif name in ("start_date", "end_date"):
                    value = to_utc(value)
                setattr(schedule, name, value)
            validate_schedule(schedule)

            if RECURRENCE_FIELDS.intersection(fields) and schedule.status == RecurringStatus.ACTIVE:
                schedule.next_run_at = recurrence.resume_run_at(schedule, now)
            schedule.updated_at = now
            self.store.save_schedule(schedule)

        self.bus.publish(events.RECURRING_UPDATED, user_id, {"id": schedule.id})
        return schedule

    def pause_schedule(self, schedule_id: str, user_id: str) -> RecurringSchedule:
        with self.locks.hold(schedule_id):
            schedule = self._load(schedule_id, user_id)
            if schedule.status == RecurringStatus.PAUSED:
                return schedule
            if schedule.status == RecurringStatus.CANCELLED:
                raise StateConflictError("Cannot pause a cancelled recurring schedule")
            schedule.status = RecurringStatus.PAUSED
            schedule.next_run_at = None
            schedule.updated_at = self.clock()
            self.store.save_schedule(schedule)

        logger.info("⏸️ Paused schedule %s", schedule_id)
        self.bus.publish(events.RECURRING_PAUSED, user_id, {"id": schedule.id, "status": schedule.status.value})
        return schedule

    def resume_schedule(self, schedule_id: str, user_id: str) -> RecurringSchedule:
        with self.locks.hold(schedule_id):
            schedule = self._load(schedule_id, user_id)
            if schedule.status == RecurringStatus.ACTIVE:
                return schedule
            if schedule.status == RecurringStatus.CANCELLED:
                raise StateConflictError("Cannot resume a cancelled recurring schedule")
            now = self.clock()
            schedule.status = RecurringStatus.ACTIVE
            schedule.next_run_at = recurrence.resume_run_at(schedule, now)
            schedule.updated_at = now
            self.store.save_schedule(schedule)

        logger.info("▶️ Resumed schedule %s (next run %s)", schedule_id, schedule.next_run_at)
        self.bus.publish(events.RECURRING_RESUMED, user_id, {"id": schedule.id, "status": schedule.status.value})
        return schedule

    def cancel_schedule(self, schedule_id: str, user_id: str) -> RecurringSchedule:
        with self.locks.hold(schedule_id):
            schedule = self._load(schedule_id, user_id)
            if schedule.status == RecurringStatus.CANCELLED:
                return schedule
            schedule.status = RecurringStatus.CANCELLED
            schedule.next_run_at = None
            schedule.updated_at = self.clock()
            self.store.save_schedule(schedule)

        logger.info("🛑 Cancelled schedule %s", schedule_id)
        self.bus.publish(events.RECURRING_CANCELLED, user_id, {"id": schedule.id, "status": schedule.status.value})
        return schedule

    def delete_schedule(self, schedule_id: str, user_id: str) -> None:
        """
        Remove the schedule. Invoices it already generated stay, still
        carrying generatedFromScheduleId.
        """
        with self.locks.hold(schedule_id):
            self._load(schedule_id, user_id)
            self.store.delete_schedule(schedule_id)

        logger.info("🗑️ Deleted schedule %s", schedule_id)
        self.bus.publish(events.RECURRING_DELETED, user_id, {"id": schedule_id})

    # ------------------------------------------------------------- generation

    def build_occurrence(self, schedule: RecurringSchedule, now: datetime) -> Invoice:
        """The invoice for the schedule's next occurrence, not yet persisted."""
        occurrence = schedule.occurrences_generated + 1
        invoice = Invoice(
            id=occurrence_invoice_id(schedule.id, occurrence),
            user_id=schedule.user_id,
            client_id=schedule.client_id,
            client_email=schedule.client_email,
            items=[item.model_copy() for item in schedule.items],
            tax_rate=schedule.tax_rate,
            discount=schedule.discount,
            discount_type=schedule.discount_type,
            currency=schedule.currency,
            invoice_date=now,
            due_date=add_days(now, schedule.due_in_days),
            notes=schedule.notes,
            terms=schedule.terms,
            share_id=new_share_id(),
            generated_from_schedule_id=schedule.id,
            occurrence_number=occurrence,
            created_at=now,
            updated_at=now,
        )
        invoice_state.apply_totals(invoice)
        invoice.record(HistoryAction.CREATED,
                       f"Generated from recurring schedule {schedule.id} (occurrence {occurrence})", at=now)
        if schedule.auto_send:
            invoice_state.send(invoice, now)
        return invoice

    def advance(self, schedule: RecurringSchedule, now: datetime) -> RecurringSchedule:
        advanced = schedule.model_copy(deep=True)
        advanced.occurrences_generated = schedule.occurrences_generated + 1
        advanced.last_run_at = now
        advanced.updated_at = now
        # A manual run ahead of time consumes the pending occurrence
        after = max(now, to_utc(schedule.next_run_at)) if schedule.next_run_at else now
        advanced.next_run_at = recurrence.next_occurrence(advanced, after)
        return advanced

    def _generate(self, schedule_id: str, now: datetime, manual: bool) -> Optional[Invoice]:
        with self.locks.hold(schedule_id):
            schedule = self._load(schedule_id, None)
            if schedule.status != RecurringStatus.ACTIVE:
                raise StateConflictError(f"Recurring schedule {schedule_id} is {schedule.status.value}")
            if schedule.next_run_at is None:
                raise StateConflictError(f"Recurring schedule {schedule_id} is exhausted")
            if not manual and to_utc(schedule.next_run_at) > now:
                return None

            invoice = self.build_occurrence(schedule, now)
            advanced = self.advance(schedule, now)
            created = self.store.commit_occurrence(advanced, schedule.occurrences_generated, invoice)

        logger.info("✅ Schedule %s generated invoice %s (occurrence %d, next run %s)",
                    schedule_id, created.invoice_number, created.occurrence_number, advanced.next_run_at)
        self.bus.publish(events.INVOICE_CREATED, created.user_id, {"id": created.id})
        self.bus.publish(events.RECURRING_GENERATED, created.user_id,
                         {"id": schedule_id, "invoiceId": created.id})
        if created.status == invoice_state.S.SENT:
            self.bus.publish(events.INVOICE_SENT, created.user_id, {"id": created.id})
            if self.mailer is not None:
                try:
                    self.mailer.dispatch_invoice(created)
                except Exception as e:
                    logger.error("❌ Could not queue e-mail for invoice %s: %s", created.id, e)
        return created

    def run_now(self, schedule_id: str, user_id: str) -> Invoice:
        """Generate the next occurrence immediately, regardless of nextRunAt."""
        self._load(schedule_id, user_id)
        return self._generate(schedule_id, self.clock(), manual=True)

    def process_due(self, now: Optional[datetime] = None) -> RunSummary:
        """One pass of the due scan. Failures are logged and retried on the next pass."""
        now = now or self.clock()
        summary = RunSummary()
        for schedule in self.store.list_due_schedules(now):
            summary.processed += 1
            try:
                invoice = self._generate(schedule.id, now, manual=False)
            except (DuplicateOccurrenceError, StateConflictError, NotFoundError) as e:
                summary.skipped += 1
                logger.warning("⚠️ Skipped schedule %s: %s", schedule.id, e)
            except Exception:
                summary.failed += 1
                logger.exception("❌ Schedule %s failed; will retry on the next pass", schedule.id)
            else:
                if invoice is None:
                    summary.skipped += 1
                else:
                    summary.generated += 1
                    summary.invoice_ids.append(invoice.id)

        if summary.processed:
            logger.info("✅ Due scan: %d processed, %d generated, %d skipped, %d failed",
                        summary.processed, summary.generated, summary.skipped, summary.failed)
        return summary
