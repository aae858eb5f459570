"""
Process-wide service instances, created on first use.

Routes depend on the get_* functions through FastAPI's Depends, so tests
swap any of them with app.dependency_overrides. The invoice lock table is
shared by the invoice and payment services; both serialise on it.
"""

import logging
import threading

from repositories.memory_repo import MemoryBillingStore
from services.event_bus import EventBus
from services.invoice_locks import KeyedLocks
from services.invoice_service import InvoiceService
from services.mailer_service import InvoiceMailer
from services.payment_service import PaymentService
from services.recurring_service import RecurringService
from settings import get_settings

logger = logging.getLogger(__name__)

_lock = threading.RLock()
_instances = {}


def _singleton(name, factory):
    with _lock:
        if name not in _instances:
            _instances[name] = factory()
        return _instances[name]


def _build_store():
    settings = get_settings()
    if settings.store_backend == "memory":
        logger.warning("⚠️ Using the in-memory store; data is lost on restart")
        return MemoryBillingStore()
    from db_configs.firebase_db import get_firestore_client
    from repositories.firestore_repo import FirestoreBillingStore
    return FirestoreBillingStore(get_firestore_client(settings.service_account_file))


def get_store():
    return _singleton("store", _build_store)


def get_event_bus() -> EventBus:
    return _singleton("bus", lambda: EventBus(get_settings().event_queue_size))


def get_mailer() -> InvoiceMailer:
    return _singleton("mailer", lambda: InvoiceMailer(get_settings()))


def get_invoice_locks() -> KeyedLocks:
    return _singleton("invoice_locks", KeyedLocks)


def get_invoice_service() -> InvoiceService:
    return _singleton("invoice_service", lambda: InvoiceService(
        get_store(), get_event_bus(), get_mailer(), get_invoice_locks(), get_settings()))


def get_payment_service() -> PaymentService:
    return _singleton("payment_service", lambda: PaymentService(
        get_store(), get_event_bus(), get_invoice_locks(), get_settings()))


def get_recurring_service() -> RecurringService:
    return _singleton("recurring_service", lambda: RecurringService(
        get_store(), get_event_bus(), get_mailer(), settings=get_settings()))


def shutdown() -> None:
    with _lock:
        mailer = _instances.get("mailer")
        _instances.clear()
    if mailer is not None:
        mailer.shutdown()
