"""
Error taxonomy for the billing engine.

Validation errors and state conflicts are raised synchronously at the
mutation boundary and are never partially applied. Duplicate occurrences
are benign replays the scheduler treats as "already done".
"""


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class BillingValidationError(BillingError):
    """Bad input: negative amounts, empty items, missing client, bad bounds."""


class StateConflictError(BillingError):
    """The entity exists but its current state forbids the operation."""


class NotFoundError(BillingError):
    """Unknown entity, or one the caller is not allowed to see."""


class DuplicateOccurrenceError(BillingError):
    """A schedule occurrence was already materialized (benign replay)."""

    def __init__(self, schedule_id: str, occurrence: int):
        super().__init__(
            f"Occurrence {occurrence} of schedule {schedule_id} already generated"
        )
        self.schedule_id = schedule_id
        self.occurrence = occurrence


class ExternalServiceError(BillingError):
    """An outbound collaborator (e-mail, gateway) failed."""
