# webhook_routes.py
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from reqResVal_models.billing_models import GatewayEvent
from services.errors import BillingValidationError, NotFoundError, StateConflictError
from services.payment_service import PaymentService, gateway_event_from_stripe, verify_gateway_signature
from services.registry import get_payment_service
from settings import Settings, get_settings

logger = logging.getLogger(__name__)
router = APIRouter()

GATEWAY_SIGNATURE_HEADER = "X-Billing-Signature"


def _apply(service: PaymentService, event: GatewayEvent) -> dict:
    """
    Acknowledge events that can never apply (unknown invoice, cancelled
    invoice, a refund larger than what is still refundable, a currency the
    invoice is not in) so the gateway stops redelivering them.
    """
    try:
        return service.handle_gateway_event(event)
    except (NotFoundError, StateConflictError, BillingValidationError) as e:
        logger.error("❌ Gateway event %s (%s) not applied: %s", event.type.value, event.transaction_id, e.message)
        return {"status": "ignored", "reason": e.message}


# -------------------- STRIPE --------------------
@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    service: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid Stripe payload: {e}")

    event = json.loads(payload)
    gateway_event = gateway_event_from_stripe(event)
    if gateway_event is None:
        return {"status": "ignored", "event": event.get("type")}

    logger.info("📩 Stripe %s -> %s", event.get("type"), gateway_event.type.value)
    return await run_in_threadpool(_apply, service, gateway_event)


# -------------------- GENERIC GATEWAY --------------------
@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Signed callback from any other gateway, already in GatewayEvent shape.
    The signature is hex HMAC-SHA256 of the raw body.
    """
    payload = await request.body()
    signature = request.headers.get(GATEWAY_SIGNATURE_HEADER)
    if not verify_gateway_signature(settings.gateway_webhook_secret, payload, signature):
        logger.warning("❌ Webhook signature mismatch")
        raise HTTPException(status_code=400, detail="Signature mismatch")

    try:
        event = GatewayEvent.model_validate_json(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid gateway payload: {e}")

    return await run_in_threadpool(_apply, service, event)
