from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatus(str, Enum):
    """
    Stored invoice status. OVERDUE is derived at read time and is never
    written as the stored status.
    """
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class DiscountType(str, Enum):
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    CHECK = "CHECK"
    OTHER = "OTHER"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentKind(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"  # linked reversal of an earlier PAYMENT


class RecurrenceFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RecurringStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class HistoryAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    REMINDER_SENT = "REMINDER_SENT"
    STATUS_CHANGED = "STATUS_CHANGED"
    REOPENED = "REOPENED"
    SHARE_UPDATED = "SHARE_UPDATED"
    CANCELLED = "CANCELLED"


class BillingModel(BaseModel):
    """camelCase on the wire and in the document store, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InvoiceItem(BillingModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(gt=0)
    rate: Decimal = Field(ge=0)

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description must not be blank")
        return value.strip()

    @computed_field
    @property
    def amount(self) -> Decimal:
        return self.quantity * self.rate


class Totals(BillingModel):
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    clamped: bool = False  # total would have gone negative


class HistoryEntry(BillingModel):
    action: HistoryAction
    description: str
    at: datetime = Field(default_factory=utc_now)
    performed_by: Optional[str] = None


def check_currency(value: str) -> str:
    code = (value or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError("currency must be a 3-letter ISO 4217 code")
    return code


class Invoice(BillingModel):
    id: str
    user_id: str
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    invoice_number: Optional[str] = None
    items: List[InvoiceItem] = []
    tax_rate: Decimal = Field(ZERO, ge=0, le=100)
    discount: Decimal = Field(ZERO, ge=0)
    discount_type: DiscountType = DiscountType.FIXED
    currency: str = "USD"

    # Derived financial state, kept consistent by the engine
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    total_clamped: bool = False
    paid_amount: Decimal = ZERO
    balance_due: Decimal = ZERO

    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_date: datetime = Field(default_factory=utc_now)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

    share_id: str
    share_enabled: bool = False

    generated_from_schedule_id: Optional[str] = None
    occurrence_number: Optional[int] = None

    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    overdue_notified_at: Optional[datetime] = None

    history: List[HistoryEntry] = []
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("currency")
    @classmethod
    def normalise_currency(cls, value: str) -> str:
        return check_currency(value)

    def record(self, action: HistoryAction, description: str, performed_by: Optional[str] = None,
               at: Optional[datetime] = None) -> None:
        """Append an audit entry."""
        self.history.append(HistoryEntry(
            action=action,
            description=description,
            at=at or utc_now(),
            performed_by=performed_by,
        ))


class Payment(BillingModel):
    id: str
    invoice_id: str
    user_id: str
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    method: PaymentMethod = PaymentMethod.OTHER
    status: PaymentStatus = PaymentStatus.PENDING
    kind: PaymentKind = PaymentKind.PAYMENT
    refunded_amount: Decimal = Field(ZERO, ge=0)
    reverses_payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class RecurringSchedule(BillingModel):
    id: str
    user_id: str
    client_id: str
    client_email: Optional[str] = None
    items: List[InvoiceItem] = Field(min_length=1)
    tax_rate: Decimal = Field(ZERO, ge=0, le=100)
    discount: Decimal = Field(ZERO, ge=0)
    discount_type: DiscountType = DiscountType.FIXED
    currency: str = "USD"
    notes: Optional[str] = None
    terms: Optional[str] = None
    due_in_days: int = Field(30, ge=0)

    frequency: RecurrenceFrequency
    interval: int = Field(1, ge=1)
    start_date: datetime
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    auto_send: bool = False

    status: RecurringStatus = RecurringStatus.ACTIVE
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    occurrences_generated: int = Field(0, ge=0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("currency")
    @classmethod
    def normalise_currency(cls, value: str) -> str:
        return check_currency(value)

    @computed_field
    @property
    def exhausted(self) -> bool:
        """Active but with nothing left to generate (endDate/maxOccurrences reached)."""
        return self.status == RecurringStatus.ACTIVE and self.next_run_at is None


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class InvoiceCreate(BillingModel):
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    items: List[InvoiceItem] = []
    tax_rate: Decimal = Field(ZERO, ge=0, le=100)
    discount: Decimal = Field(ZERO, ge=0)
    discount_type: DiscountType = DiscountType.FIXED
    currency: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    share_enabled: bool = False


class InvoiceUpdate(BillingModel):
    """Partial update. Only fields present in the request are applied."""
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    items: Optional[List[InvoiceItem]] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    currency: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    terms: Optional[str] = None


# Changing any of these alters the invoice's totals or who owes them
FINANCIAL_FIELDS = frozenset({"client_id", "items", "tax_rate", "discount", "discount_type", "currency"})


class ReopenRequest(BillingModel):
    reason: str = Field(min_length=1)


class SendRequest(BillingModel):
    recipient_email: Optional[str] = None


class ShareUpdate(BillingModel):
    share_enabled: bool
    regenerate: bool = False


class PublicInvoice(BillingModel):
    """What an unauthenticated share-link holder may see."""
    invoice_number: Optional[str] = None
    items: List[InvoiceItem]
    tax_rate: Decimal
    discount: Decimal
    discount_type: DiscountType
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    status: InvoiceStatus
    invoice_date: datetime
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    terms: Optional[str] = None


class PaymentCreate(BillingModel):
    invoice_id: str
    amount: Decimal = Field(gt=0)
    method: PaymentMethod = PaymentMethod.OTHER
    status: PaymentStatus = PaymentStatus.COMPLETED
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None


class RefundRequest(BillingModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class GatewayEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    REFUND_COMPLETED = "refund.completed"


class GatewayEvent(BillingModel):
    """A gateway callback normalised to the three events the reconciler understands."""
    type: GatewayEventType
    transaction_id: str = Field(min_length=1)
    invoice_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = None
    method: PaymentMethod = PaymentMethod.STRIPE
    # refund.completed: the gateway id of the payment being refunded
    original_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    occurred_at: Optional[datetime] = None


class RecurringScheduleCreate(BillingModel):
    client_id: str = Field(min_length=1)
    client_email: Optional[str] = None
    items: List[InvoiceItem] = Field(min_length=1)
    tax_rate: Decimal = Field(ZERO, ge=0, le=100)
    discount: Decimal = Field(ZERO, ge=0)
    discount_type: DiscountType = DiscountType.FIXED
    currency: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    due_in_days: int = Field(30, ge=0)
    frequency: RecurrenceFrequency
    interval: int = Field(1, ge=1)
    start_date: datetime
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    auto_send: bool = False


class RecurringScheduleUpdate(BillingModel):
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    items: Optional[List[InvoiceItem]] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    due_in_days: Optional[int] = Field(None, ge=0)
    frequency: Optional[RecurrenceFrequency] = None
    interval: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    auto_send: Optional[bool] = None


RECURRENCE_FIELDS = frozenset({"frequency", "interval", "start_date", "end_date", "max_occurrences"})


class ClientEventRequest(BillingModel):
    type: str = Field(pattern=r"^client\.(created|updated|deleted)$")


class RunSummary(BillingModel):
    processed: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    invoice_ids: List[str] = []


class PaymentResult(BillingModel):
    payment: Payment
    invoice: Invoice


class PaymentCompleteRequest(BillingModel):
    processed_at: Optional[datetime] = None


class PaymentFailRequest(BillingModel):
    reason: Optional[str] = None


class InvoiceTotals(BillingModel):
    """Per-currency money figures; amounts in different currencies are never added together."""
    revenue: Decimal = ZERO  # paidAmount, partial payments included
    pending: Decimal = ZERO  # balanceDue on open invoices
    overdue: Decimal = ZERO  # the part of pending that is past due


class InvoiceStatistics(BillingModel):
    total: int = 0
    by_status: Dict[str, int] = {}
    by_currency: Dict[str, InvoiceTotals] = {}


class PaymentTotals(BillingModel):
    received: Decimal = ZERO
    refunded: Decimal = ZERO
    net: Decimal = ZERO
    received_this_month: Decimal = ZERO


class PaymentStatistics(BillingModel):
    pending_payments: int = 0
    failed_payments: int = 0
    by_currency: Dict[str, PaymentTotals] = {}
