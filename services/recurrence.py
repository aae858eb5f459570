"""
Recurrence calculator.

Occurrence k of a schedule fires at startDate + k * interval units, always
anchored on startDate so month-end clamping never drifts (Jan 31 -> Feb 28
-> Mar 31, not Mar 28). Nothing here mutates the schedule; the runner owns
the counters.
"""

from datetime import datetime
from typing import Optional

from reqResVal_models.billing_models import RecurrenceFrequency, RecurringSchedule
from utils.date_utils import shift, to_utc

F = RecurrenceFrequency

# Upper bound on forward steps when catching up from a rough estimate
_MAX_STEPS = 10_000


def occurrence_at(schedule: RecurringSchedule, index: int) -> datetime:
    """Instant of the index-th firing (0-based) of the pattern."""
    steps = index * schedule.interval
    start = schedule.start_date
    if schedule.frequency == F.DAILY:
        return shift(start, days=steps)
    if schedule.frequency == F.WEEKLY:
        return shift(start, weeks=steps)
    if schedule.frequency == F.MONTHLY:
        return shift(start, months=steps)
    return shift(start, years=steps)


def _estimate_index(schedule: RecurringSchedule, after: datetime) -> int:
    start = to_utc(schedule.start_date)
    elapsed_days = (after - start).days
    unit_days = {F.DAILY: 1, F.WEEKLY: 7, F.MONTHLY: 31, F.YEARLY: 366}[schedule.frequency]
    # Undershoot on purpose; the caller walks forward
    return max(0, elapsed_days // (unit_days * schedule.interval) - 1)


def next_occurrence(schedule: RecurringSchedule, after: datetime) -> Optional[datetime]:
    """
    Earliest firing strictly after `after` (or startDate itself when `after`
    is before it), or None once endDate or maxOccurrences is reached.
    """
    if schedule.max_occurrences is not None and schedule.occurrences_generated + 1 > schedule.max_occurrences:
        return None

    after = to_utc(after)
    start = to_utc(schedule.start_date)
    if after < start:
        candidate = start
    else:
        index = _estimate_index(schedule, after)
        candidate = occurrence_at(schedule, index)
        steps = 0
        while candidate <= after:
            index += 1
            steps += 1
            if steps > _MAX_STEPS:
                raise RuntimeError(f"Recurrence for schedule {schedule.id} did not converge")
            candidate = occurrence_at(schedule, index)

    if schedule.end_date is not None and candidate > to_utc(schedule.end_date):
        return None
    return candidate


def initial_run_at(schedule: RecurringSchedule) -> Optional[datetime]:
    """nextRunAt for a freshly created schedule: its startDate, within bounds."""
    if schedule.max_occurrences is not None and schedule.occurrences_generated >= schedule.max_occurrences:
        return None
    start = to_utc(schedule.start_date)
    if schedule.end_date is not None and start > to_utc(schedule.end_date):
        return None
    return start


def resume_run_at(schedule: RecurringSchedule, now: datetime) -> Optional[datetime]:
    """nextRunAt after a resume or a recurrence edit."""
    now = to_utc(now)
    if schedule.last_run_at is None:
        first = initial_run_at(schedule)
        if first is None or first >= now:
            return first
        return next_occurrence(schedule, now)
    return next_occurrence(schedule, max(now, to_utc(schedule.last_run_at)))
