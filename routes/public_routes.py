from fastapi import APIRouter, Depends

from reqResVal_models.billing_models import PublicInvoice
from services.invoice_service import InvoiceService
from services.payment_service import PaymentService
from services.registry import get_invoice_service, get_payment_service

router = APIRouter()


@router.get("/public/invoices/{share_id}", response_model=PublicInvoice)
def get_public_invoice(share_id: str, service: InvoiceService = Depends(get_invoice_service)):
    """
    Unauthenticated share-link view. Unknown and disabled links both 404;
    a first view moves a SENT invoice to VIEWED.
    """
    invoice = service.get_public_invoice(share_id)
    return PublicInvoice.model_validate(invoice.model_dump())


@router.post("/public/invoices/{share_id}/checkout")
def create_checkout(
    share_id: str,
    invoices: InvoiceService = Depends(get_invoice_service),
    payments: PaymentService = Depends(get_payment_service),
):
    invoice = invoices.get_public_invoice(share_id)
    return payments.create_checkout_session(invoice)
