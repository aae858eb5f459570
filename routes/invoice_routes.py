from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response

from auth.session_auth import verify_session
from reqResVal_models.billing_models import (
    Invoice,
    InvoiceCreate,
    InvoiceStatistics,
    InvoiceStatus,
    InvoiceUpdate,
    ReopenRequest,
    SendRequest,
    ShareUpdate,
)
from services.invoice_service import InvoiceService
from services.registry import get_invoice_service

router = APIRouter()


@router.post("/invoices", response_model=Invoice, status_code=201)
def create_invoice(
    body: InvoiceCreate,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.create_invoice(user_id, body)


@router.get("/invoices", response_model=List[Invoice])
def list_invoices(
    status: Optional[InvoiceStatus] = Query(None),
    client_id: Optional[str] = Query(None, alias="clientId"),
    schedule_id: Optional[str] = Query(None, alias="scheduleId"),
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.list_invoices(user_id, status=status, client_id=client_id, schedule_id=schedule_id)


@router.get("/invoices/statistics", response_model=InvoiceStatistics)
def invoice_statistics(
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.get_statistics(user_id)


@router.get("/invoices/{invoice_id}", response_model=Invoice)
def get_invoice(
    invoice_id: str,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.get_invoice(invoice_id, user_id)


@router.patch("/invoices/{invoice_id}", response_model=Invoice)
def update_invoice(
    invoice_id: str,
    body: InvoiceUpdate,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Financial fields (items, tax, discount, currency, client) can only change on a DRAFT."""
    return service.update_invoice(invoice_id, user_id, body)


@router.post("/invoices/{invoice_id}/send", response_model=Invoice)
def send_invoice(
    invoice_id: str,
    body: Optional[SendRequest] = Body(None),
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    recipient = body.recipient_email if body else None
    return service.send_invoice(invoice_id, user_id, recipient)


@router.post("/invoices/{invoice_id}/reopen", response_model=Invoice)
def reopen_invoice(
    invoice_id: str,
    body: ReopenRequest,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.reopen_invoice(invoice_id, user_id, body.reason)


@router.post("/invoices/{invoice_id}/cancel", response_model=Invoice)
def cancel_invoice(
    invoice_id: str,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.cancel_invoice(invoice_id, user_id)


@router.delete("/invoices/{invoice_id}", status_code=204)
def delete_invoice(
    invoice_id: str,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    service.delete_invoice(invoice_id, user_id)
    return Response(status_code=204)


@router.put("/invoices/{invoice_id}/share", response_model=Invoice)
def update_share(
    invoice_id: str,
    body: ShareUpdate,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    return service.update_share(invoice_id, user_id, body.share_enabled, body.regenerate)


@router.post("/invoices/{invoice_id}/duplicate", response_model=Invoice, status_code=201)
def duplicate_invoice(
    invoice_id: str,
    user_id: str = Depends(verify_session),
    service: InvoiceService = Depends(get_invoice_service),
):
    """New DRAFT copy with a fresh number; payments and status are not copied."""
    return service.duplicate_invoice(invoice_id, user_id)
