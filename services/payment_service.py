import hashlib
import hmac
import logging
from typing import List, Optional, Tuple
from uuid import uuid4

import stripe

from reqResVal_models.billing_models import (
    GatewayEvent,
    GatewayEventType,
    HistoryAction,
    Invoice,
    Payment,
    PaymentCreate,
    PaymentKind,
    PaymentStatistics,
    PaymentStatus,
    PaymentTotals,
    utc_now,
)
from services import event_bus as events
from services import invoice_state, reconciler
from services.errors import BillingValidationError, ExternalServiceError, NotFoundError, StateConflictError
from services.invoice_locks import KeyedLocks
from services.totals_service import from_minor_units, to_minor_units
from settings import Settings
from utils.date_utils import start_of_month, to_utc

logger = logging.getLogger(__name__)

# Recorded but not yet settled; complete_payment/fail_payment move them on
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

# Stripe refund objects arrive on these events once the charge no longer embeds its refunds
STRIPE_REFUND_EVENTS = ("refund.created", "refund.updated", "charge.refund.updated")


def new_payment_id() -> str:
    return f"pay_{uuid4().hex[:12]}"


def verify_gateway_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 over the raw request body, hex encoded."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _stripe_refund(refund_id: str, amount: int, original: Optional[str], metadata: dict) -> GatewayEvent:
    return GatewayEvent(
        type=GatewayEventType.REFUND_COMPLETED,
        transaction_id=refund_id,
        invoice_id=metadata.get("invoice_id"),
        amount=from_minor_units(amount),
        original_transaction_id=original,
    )


def gateway_event_from_stripe(event: dict) -> Optional[GatewayEvent]:
    """
    Map the Stripe events we act on to a GatewayEvent. Anything else
    returns None and is acknowledged without action.
    """
    event_type = event.get("type")
    obj = event.get("data", {}).get("object", {})
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in (None, "paid"):
            return None
        return GatewayEvent(
            type=GatewayEventType.PAYMENT_COMPLETED,
            transaction_id=obj.get("payment_intent") or obj["id"],
            invoice_id=metadata.get("invoice_id"),
            amount=from_minor_units(obj["amount_total"]),
            currency=(obj.get("currency") or "").upper() or None,
        )
    if event_type == "payment_intent.succeeded":
        return GatewayEvent(
            type=GatewayEventType.PAYMENT_COMPLETED,
            transaction_id=obj["id"],
            invoice_id=metadata.get("invoice_id"),
            amount=from_minor_units(obj.get("amount_received") or obj["amount"]),
            currency=(obj.get("currency") or "").upper() or None,
        )
    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return GatewayEvent(
            type=GatewayEventType.PAYMENT_FAILED,
            transaction_id=obj["id"],
            invoice_id=metadata.get("invoice_id"),
            amount=from_minor_units(obj["amount"]) if obj.get("amount") else None,
            currency=(obj.get("currency") or "").upper() or None,
            failure_reason=error.get("message"),
        )
    if event_type in STRIPE_REFUND_EVENTS:
        # Pending refunds come back through refund.updated once they settle
        if obj.get("status") != "succeeded":
            return None
        return _stripe_refund(obj["id"], obj["amount"], obj.get("payment_intent") or obj.get("charge"), metadata)
    if event_type == "charge.refunded":
        # Only older API versions embed the refunds list here
        refunds = (obj.get("refunds") or {}).get("data") or []
        if not refunds:
            return None
        latest = refunds[0]
        return _stripe_refund(latest["id"], latest["amount"], obj.get("payment_intent") or obj["id"], metadata)
    return None


def is_replay(existing: Optional[Payment], event: GatewayEvent) -> bool:
    """
    True when a gateway event for an already stored transaction id changes
    nothing. A failed attempt is not final: the gateway keeps the same id
    when the customer retries, so a later completion still applies.
    """
    if existing is None:
        return False
    if existing.kind != PaymentKind.PAYMENT:
        return True
    if existing.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        return True
    return event.type == GatewayEventType.PAYMENT_FAILED and existing.status == PaymentStatus.FAILED


class PaymentService:
    """
    Every path that moves money (manual entry, gateway webhook, refund)
    reads and writes the invoice inside one store transaction and goes
    through the reconciler. The in-process invoice lock only saves
    same-process writers from retrying.
    """

    def __init__(self, store, bus, locks: Optional[KeyedLocks] = None,
                 settings: Optional[Settings] = None, clock=utc_now):
        self.store = store
        self.bus = bus
        self.locks = locks or KeyedLocks()
        self.settings = settings or Settings()
        self.clock = clock

    def _load_invoice(self, invoice_id: str, user_id: Optional[str], reader=None) -> Invoice:
        invoice = (reader or self.store).get_invoice(invoice_id)
        if invoice is None or (user_id is not None and invoice.user_id != user_id):
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def _publish(self, event_type: str, before, invoice: Invoice, payment: Payment) -> None:
        self.bus.publish(event_type, invoice.user_id, {"invoiceId": invoice.id, "paymentId": payment.id})
        if before != invoice.status:
            self.bus.publish(events.INVOICE_STATUS_CHANGED, invoice.user_id,
                             {"id": invoice.id, "status": invoice.status.value})

    def _apply_completed(self, txn, invoice: Invoice, payment: Payment) -> Invoice:
        updated = reconciler.apply_payment(invoice, payment, payment.processed_at or self.clock())
        txn.put_payment(payment)
        txn.put_invoice(updated)
        return updated

    def _record_failure(self, txn, invoice: Invoice, payment: Payment, reason: Optional[str], now) -> None:
        payment.status = PaymentStatus.FAILED
        payment.processed_at = now
        if reason:
            payment.notes = reason
        invoice.record(HistoryAction.PAYMENT_FAILED,
                       f"Payment {payment.transaction_id or payment.id} failed: {reason or 'unknown reason'}",
                       at=now)
        invoice.updated_at = now
        txn.put_payment(payment)
        txn.put_invoice(invoice)

    # ------------------------------------------------------------- manual entry

    def record_payment(self, user_id: str, data: PaymentCreate) -> Tuple[Payment, Invoice]:
        if data.status in (PaymentStatus.REFUNDED, PaymentStatus.CANCELLED):
            raise BillingValidationError(f"Cannot record a new payment as {data.status.value}")

        def work(txn):
            invoice = self._load_invoice(data.invoice_id, user_id, txn)
            now = self.clock()
            if invoice.status not in invoice_state.PAYABLE_STATUSES:
                raise StateConflictError(f"Cannot record a payment on a {invoice.status.value} invoice")
            if data.transaction_id and txn.find_payment_by_transaction(data.transaction_id):
                raise StateConflictError(f"Transaction {data.transaction_id} is already recorded")
            if data.status == PaymentStatus.COMPLETED and data.amount > invoice.balance_due:
                raise BillingValidationError(
                    f"Payment amount {data.amount} exceeds the balance due {invoice.balance_due}"
                )

            payment = Payment(
                id=new_payment_id(),
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                amount=data.amount,
                currency=invoice.currency,
                method=data.method,
                status=data.status,
                transaction_id=data.transaction_id,
                notes=data.notes,
                processed_at=to_utc(data.processed_at) or now,
                created_at=now,
            )
            before = invoice.status
            if payment.status == PaymentStatus.COMPLETED:
                invoice = self._apply_completed(txn, invoice, payment)
            else:
                txn.put_payment(payment)
            return before, payment, invoice

        with self.locks.hold(data.invoice_id):
            before, payment, invoice = self.store.run_in_transaction(work)

        logger.info("✅ Recorded %s %s payment %s of %s on invoice %s",
                    payment.status.value, payment.method.value, payment.id, payment.amount, invoice.id)
        event_type = events.PAYMENT_FAILED if payment.status == PaymentStatus.FAILED else events.PAYMENT_RECORDED
        self._publish(event_type, before, invoice, payment)
        return payment, invoice

    def complete_payment(self, payment_id: str, user_id: str, processed_at=None) -> Tuple[Payment, Invoice]:
        """Settle a PENDING/PROCESSING payment; the money reaches the invoice now."""
        payment = self.get_payment(payment_id, user_id)

        def work(txn):
            current = txn.get_payment(payment_id)
            if current.status not in OPEN_PAYMENT_STATUSES:
                raise StateConflictError(f"Payment {payment_id} is already {current.status.value}")
            invoice = self._load_invoice(current.invoice_id, user_id, txn)
            if invoice.status not in invoice_state.PAYABLE_STATUSES:
                raise StateConflictError(f"Cannot apply a payment to a {invoice.status.value} invoice")
            if current.amount > invoice.balance_due:
                raise BillingValidationError(
                    f"Payment amount {current.amount} exceeds the balance due {invoice.balance_due}"
                )
            before = invoice.status
            current.status = PaymentStatus.COMPLETED
            current.processed_at = to_utc(processed_at) or self.clock()
            return before, current, self._apply_completed(txn, invoice, current)

        with self.locks.hold(payment.invoice_id):
            before, payment, invoice = self.store.run_in_transaction(work)

        logger.info("✅ Payment %s completed on invoice %s", payment.id, invoice.id)
        self._publish(events.PAYMENT_RECORDED, before, invoice, payment)
        return payment, invoice

    def fail_payment(self, payment_id: str, user_id: str, reason: Optional[str] = None) -> Tuple[Payment, Invoice]:
        """Close a PENDING/PROCESSING payment without moving money."""
        payment = self.get_payment(payment_id, user_id)

        def work(txn):
            current = txn.get_payment(payment_id)
            if current.status not in OPEN_PAYMENT_STATUSES:
                raise StateConflictError(f"Payment {payment_id} is already {current.status.value}")
            invoice = self._load_invoice(current.invoice_id, user_id, txn)
            before = invoice.status
            self._record_failure(txn, invoice, current, reason, self.clock())
            return before, current, invoice

        with self.locks.hold(payment.invoice_id):
            before, payment, invoice = self.store.run_in_transaction(work)

        logger.warning("⚠️ Payment %s on invoice %s marked failed: %s", payment.id, invoice.id, reason)
        self._publish(events.PAYMENT_FAILED, before, invoice, payment)
        return payment, invoice

    def list_payments(self, invoice_id: str, user_id: str) -> List[Payment]:
        self._load_invoice(invoice_id, user_id)
        return self.store.list_payments(invoice_id)

    def get_payment(self, payment_id: str, user_id: str) -> Payment:
        payment = self.store.get_payment(payment_id)
        if payment is None or payment.user_id != user_id:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_statistics(self, user_id: str) -> PaymentStatistics:
        """Per-currency money received and refunded, plus open/failed counts."""
        month_start = start_of_month(self.clock())
        stats = PaymentStatistics()
        for payment in self.store.list_user_payments(user_id):
            if payment.status in OPEN_PAYMENT_STATUSES:
                stats.pending_payments += 1
            elif payment.status == PaymentStatus.FAILED:
                stats.failed_payments += 1

            money = stats.by_currency.setdefault(payment.currency, PaymentTotals())
            if payment.kind == PaymentKind.REFUND and payment.status == PaymentStatus.COMPLETED:
                money.refunded += payment.amount
            elif payment.kind == PaymentKind.PAYMENT and payment.status in (
                PaymentStatus.COMPLETED, PaymentStatus.REFUNDED
            ):
                money.received += payment.amount
                processed = to_utc(payment.processed_at or payment.created_at)
                if processed >= month_start:
                    money.received_this_month += payment.amount
            money.net = money.received - money.refunded
        return stats

    # ------------------------------------------------------------------ refunds

    def _refund(self, txn, invoice: Invoice, payment: Payment, amount=None,
                transaction_id: Optional[str] = None, reason: Optional[str] = None):
        now = self.clock()
        original, reversal = reconciler.reverse_payment(payment, amount, now, transaction_id=transaction_id)
        if reason:
            reversal.notes = reason
        updated = reconciler.apply_refund(invoice, payment, reversal.amount, now)
        txn.put_payment(original)
        txn.put_payment(reversal)
        txn.put_invoice(updated)
        return original, reversal, updated

    def refund_payment(self, payment_id: str, user_id: str, amount=None,
                       reason: Optional[str] = None) -> Tuple[Payment, Invoice]:
        payment = self.get_payment(payment_id, user_id)

        def work(txn):
            current = txn.get_payment(payment_id)
            invoice = self._load_invoice(current.invoice_id, user_id, txn)
            before = invoice.status
            _, reversal, invoice = self._refund(txn, invoice, current, amount, reason=reason)
            return before, reversal, invoice

        with self.locks.hold(payment.invoice_id):
            before, reversal, invoice = self.store.run_in_transaction(work)

        logger.info("✅ Refunded %s of payment %s on invoice %s", reversal.amount, payment_id, invoice.id)
        self._publish(events.PAYMENT_REFUNDED, before, invoice, reversal)
        return reversal, invoice

    # ----------------------------------------------------------------- gateway

    def handle_gateway_event(self, event: GatewayEvent) -> dict:
        """
        Apply a normalised gateway callback. Replays of an already settled
        transaction id are acknowledged and ignored; a completion for an
        attempt stored as failed or pending settles that same record.
        """
        if event.type == GatewayEventType.REFUND_COMPLETED:
            return self._gateway_refund(event)

        if not event.invoice_id:
            raise BillingValidationError("Gateway event carries no invoice id")
        if event.type == GatewayEventType.PAYMENT_COMPLETED and event.amount is None:
            raise BillingValidationError("Completed payment event carries no amount")

        def work(txn):
            existing = txn.find_payment_by_transaction(event.transaction_id)
            if is_replay(existing, event):
                return None
            invoice = self._load_invoice(event.invoice_id, None, txn)
            if existing is not None and existing.invoice_id != invoice.id:
                raise BillingValidationError(
                    f"Transaction {event.transaction_id} belongs to invoice {existing.invoice_id}"
                )
            if event.currency and event.currency != invoice.currency:
                raise BillingValidationError(
                    f"Gateway currency {event.currency} does not match invoice currency {invoice.currency}"
                )
            now = self.clock()
            before = invoice.status
            payment = existing or self._gateway_payment(event, invoice, now)

            if event.type == GatewayEventType.PAYMENT_COMPLETED:
                if payment.status == PaymentStatus.FAILED:
                    payment.notes = None
                payment.amount = event.amount
                payment.status = PaymentStatus.COMPLETED
                payment.processed_at = to_utc(event.occurred_at) or now
                return before, events.PAYMENT_RECORDED, payment, self._apply_completed(txn, invoice, payment)

            self._record_failure(txn, invoice, payment, event.failure_reason, now)
            return before, events.PAYMENT_FAILED, payment, invoice

        with self.locks.hold(event.invoice_id):
            outcome = self.store.run_in_transaction(work)

        if outcome is None:
            logger.info("⚠️ Gateway transaction %s already processed", event.transaction_id)
            return {"status": "duplicate", "transactionId": event.transaction_id}

        before, event_type, payment, invoice = outcome
        logger.info("✅ Gateway %s for invoice %s (%s)", event.type.value, invoice.id, event.transaction_id)
        self._publish(event_type, before, invoice, payment)
        return {"status": "processed", "paymentId": payment.id, "invoiceStatus": invoice.status.value}

    def _gateway_payment(self, event: GatewayEvent, invoice: Invoice, now) -> Payment:
        return Payment(
            id=new_payment_id(),
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            # A failed attempt may not report an amount; the balance is what was attempted
            amount=event.amount or invoice.balance_due or invoice.total_amount,
            currency=invoice.currency,
            method=event.method,
            status=PaymentStatus.PENDING,
            transaction_id=event.transaction_id,
            created_at=now,
        )

    def _gateway_refund(self, event: GatewayEvent) -> dict:
        if not event.original_transaction_id:
            raise BillingValidationError("Refund event carries no original transaction id")
        original = self.store.find_payment_by_transaction(event.original_transaction_id)
        if original is None:
            raise NotFoundError(f"No payment for transaction {event.original_transaction_id}")

        def work(txn):
            if txn.find_payment_by_transaction(event.transaction_id):
                return None
            current = txn.get_payment(original.id)
            invoice = self._load_invoice(current.invoice_id, None, txn)
            before = invoice.status
            _, reversal, invoice = self._refund(txn, invoice, current, event.amount,
                                                transaction_id=event.transaction_id)
            return before, reversal, invoice

        with self.locks.hold(original.invoice_id):
            outcome = self.store.run_in_transaction(work)

        if outcome is None:
            logger.info("⚠️ Gateway refund %s already processed", event.transaction_id)
            return {"status": "duplicate", "transactionId": event.transaction_id}

        before, reversal, invoice = outcome
        logger.info("✅ Gateway refund %s applied to invoice %s", event.transaction_id, invoice.id)
        self._publish(events.PAYMENT_REFUNDED, before, invoice, reversal)
        return {"status": "processed", "paymentId": reversal.id, "invoiceStatus": invoice.status.value}

    # ----------------------------------------------------------------- checkout

    def create_checkout_session(self, invoice: Invoice) -> dict:
        """Creates a Stripe checkout session for the invoice's balance due."""
        if invoice.status not in invoice_state.OPEN_STATUSES:
            raise StateConflictError(f"Cannot pay a {invoice.status.value} invoice")
        if invoice.balance_due <= 0:
            raise StateConflictError("Invoice has no balance due")
        if not self.settings.stripe_secret_key:
            raise ExternalServiceError("STRIPE_SECRET_KEY missing in environment.")

        stripe.api_key = self.settings.stripe_secret_key
        frontend = self.settings.frontend_url.rstrip("/")
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": invoice.currency.lower(),
                            "product_data": {"name": f"Invoice {invoice.invoice_number or invoice.id}"},
                            "unit_amount": to_minor_units(invoice.balance_due),
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                success_url=f"{frontend}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend}/payment-failed",
                metadata={"invoice_id": invoice.id},
                payment_intent_data={"metadata": {"invoice_id": invoice.id}},
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe session creation failed: {e}")
        return {"checkoutUrl": session.url, "sessionId": session.id}
