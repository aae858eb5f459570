from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from auth.session_auth import verify_session
from reqResVal_models.billing_models import (
    Payment,
    PaymentCompleteRequest,
    PaymentCreate,
    PaymentFailRequest,
    PaymentResult,
    PaymentStatistics,
    RefundRequest,
)
from services.payment_service import PaymentService
from services.registry import get_payment_service

router = APIRouter()


@router.post("", response_model=PaymentResult, status_code=201)
def record_payment(
    body: PaymentCreate,
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Manually recorded payment (cash, bank transfer, cheque...)."""
    payment, invoice = service.record_payment(user_id, body)
    return PaymentResult(payment=payment, invoice=invoice)


@router.get("", response_model=List[Payment])
def list_payments(
    invoice_id: str = Query(..., alias="invoiceId"),
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    return service.list_payments(invoice_id, user_id)


@router.get("/statistics", response_model=PaymentStatistics)
def payment_statistics(
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_statistics(user_id)


@router.get("/{payment_id}", response_model=Payment)
def get_payment(
    payment_id: str,
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment(payment_id, user_id)


@router.post("/{payment_id}/refund", response_model=PaymentResult)
def refund_payment(
    payment_id: str,
    body: Optional[RefundRequest] = Body(None),
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Full refund when no amount is given; returns the linked REFUND record."""
    body = body or RefundRequest()
    reversal, invoice = service.refund_payment(payment_id, user_id, body.amount, body.reason)
    return PaymentResult(payment=reversal, invoice=invoice)


@router.post("/{payment_id}/complete", response_model=PaymentResult)
def complete_payment(
    payment_id: str,
    body: Optional[PaymentCompleteRequest] = Body(None),
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    """Settle a pending/processing payment; 409 once it is completed or failed."""
    processed_at = body.processed_at if body else None
    payment, invoice = service.complete_payment(payment_id, user_id, processed_at)
    return PaymentResult(payment=payment, invoice=invoice)


@router.post("/{payment_id}/fail", response_model=PaymentResult)
def fail_payment(
    payment_id: str,
    body: Optional[PaymentFailRequest] = Body(None),
    user_id: str = Depends(verify_session),
    service: PaymentService = Depends(get_payment_service),
):
    reason = body.reason if body else None
    payment, invoice = service.fail_payment(payment_id, user_id, reason)
    return PaymentResult(payment=payment, invoice=invoice)
