import os

# Must be set before settings/main are imported anywhere
os.environ.setdefault("BILLING_STORE", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SESSION_SECRET", "test-secret")

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from reqResVal_models.billing_models import Invoice, InvoiceItem
from repositories.memory_repo import MemoryBillingStore
from services import invoice_state
from services.event_bus import EventBus
from services.invoice_locks import KeyedLocks
from services.invoice_service import InvoiceService
from services.payment_service import PaymentService
from services.recurring_service import RecurringService
from settings import Settings

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class RecordingBus(EventBus):
    """EventBus that also remembers everything published."""

    def __init__(self):
        super().__init__(queue_size=10)
        self.published = []

    def publish(self, event_type, user_id, payload):
        self.published.append((event_type, user_id, payload))
        return super().publish(event_type, user_id, payload)

    def types(self):
        return [event_type for event_type, _, _ in self.published]


def item(quantity="2", rate="50.00", description="Consulting"):
    return InvoiceItem(description=description, quantity=Decimal(quantity), rate=Decimal(rate))


def make_invoice(**overrides):
    data = dict(
        id="inv_1",
        user_id="user-1",
        client_id="client-1",
        items=[item()],
        tax_rate=Decimal("10"),
        discount=Decimal("20"),
        share_id="share-1",
        invoice_date=NOW,
        due_date=datetime(2025, 2, 14, tzinfo=timezone.utc),
    )
    data.update(overrides)
    invoice = Invoice(**data)
    invoice_state.apply_totals(invoice)
    return invoice


class _Abandon(Exception):
    pass


class ContendedStore(MemoryBillingStore):
    """
    Behaves like Firestore under contention: when `interleave` is set, the
    next transaction's first attempt is thrown away after its reads, the
    interleaved write commits, and the work runs again on fresh state.
    """

    def __init__(self):
        super().__init__()
        self.interleave = None

    def run_in_transaction(self, work):
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None

            def first_attempt(txn):
                work(txn)
                raise _Abandon()

            try:
                super().run_in_transaction(first_attempt)
            except _Abandon:
                pass
            interleave()
        return super().run_in_transaction(work)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        session_secret="test-secret",
        scheduler_enabled=False,
        gateway_webhook_secret="gw-secret",
        stripe_webhook_secret="whsec_test",
        mail_retry_delay_seconds=0,
    )


@pytest.fixture
def store():
    return MemoryBillingStore()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def mailer():
    return MagicMock()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def invoice_service(store, bus, mailer, locks, settings, clock):
    return InvoiceService(store, bus, mailer, locks, settings, clock=clock)


@pytest.fixture
def payment_service(store, bus, locks, settings, clock):
    return PaymentService(store, bus, locks, settings, clock=clock)


@pytest.fixture
def recurring_service(store, bus, mailer, settings, clock):
    return RecurringService(store, bus, mailer, settings=settings, clock=clock)
