"""
Change notification fan-out.

Every connected session owns a Subscription with a bounded asyncio queue.
publish() never blocks: it hands the event to each subscriber's event loop
and, when a queue is full, the oldest queued event is dropped. Events are
hints to refetch, so losing the oldest one is harmless.

publish() may be called from worker threads (APScheduler, sync route
handlers); delivery is always marshalled onto the subscriber's loop.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional
from uuid import uuid4

from reqResVal_models.billing_models import utc_now

logger = logging.getLogger(__name__)

INVOICE_CREATED = "invoice.created"
INVOICE_UPDATED = "invoice.updated"
INVOICE_SENT = "invoice.sent"
INVOICE_VIEWED = "invoice.viewed"
INVOICE_STATUS_CHANGED = "invoice.status_changed"
INVOICE_CANCELLED = "invoice.cancelled"
INVOICE_SHARE_UPDATED = "invoice.share_updated"
INVOICE_OVERDUE = "invoice.overdue"
INVOICE_DELETED = "invoice.deleted"
PAYMENT_RECORDED = "payment.recorded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
CLIENT_CREATED = "client.created"
CLIENT_UPDATED = "client.updated"
CLIENT_DELETED = "client.deleted"
RECURRING_CREATED = "recurring.created"
RECURRING_UPDATED = "recurring.updated"
RECURRING_PAUSED = "recurring.paused"
RECURRING_RESUMED = "recurring.resumed"
RECURRING_CANCELLED = "recurring.cancelled"
RECURRING_GENERATED = "recurring.generated"
RECURRING_DELETED = "recurring.deleted"


@dataclass
class ChangeEvent:
    type: str
    user_id: str
    payload: dict
    ts: datetime = field(default_factory=utc_now)

    def to_wire(self) -> dict:
        return {"type": self.type, "payload": self.payload, "ts": self.ts.isoformat()}


class Subscription:

    def __init__(self, user_id: str, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.id = uuid4().hex
        self.user_id = user_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, event: ChangeEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    def offer(self, event: ChangeEvent) -> None:
        """Queue event on the subscriber's loop. Raises RuntimeError if the loop is closed."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._put(event)
        else:
            self.loop.call_soon_threadsafe(self._put, event)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()


class EventBus:

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, user_id: str, loop: Optional[asyncio.AbstractEventLoop] = None,
                  maxsize: Optional[int] = None) -> Subscription:
        loop = loop or asyncio.get_running_loop()
        subscription = Subscription(user_id, loop, maxsize or self.queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.info("🔌 Stream subscribed for user %s (%s)", user_id, subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        if removed is not None:
            logger.info("🔌 Stream closed for user %s (%s, %d dropped)",
                        subscription.user_id, subscription.id, subscription.dropped)

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions.values() if s.user_id == user_id)

    def publish(self, event_type: str, user_id: str, payload: dict) -> int:
        """Fan an event out to every session of user_id. Returns how many were offered it."""
        event = ChangeEvent(type=event_type, user_id=user_id, payload=payload)
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.user_id == user_id]

        delivered = 0
        for subscription in targets:
            try:
                subscription.offer(event)
                delivered += 1
            except RuntimeError:
                # Loop already closed: the session is gone
                logger.warning("⚠️ Dropping dead subscription %s", subscription.id)
                self.unsubscribe(subscription)
        logger.debug("📣 %s -> %d subscriber(s)", event_type, delivered)
        return delivered
