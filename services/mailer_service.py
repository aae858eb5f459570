import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from jinja2 import Template
from postmarker.core import PostmarkClient

from reqResVal_models.billing_models import Invoice
from services.errors import ExternalServiceError
from settings import Settings
from utils.date_utils import format_date

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates")
INVOICE_TEMPLATE = "invoice_email_template.html"
REMINDER_TEMPLATE = "payment_reminder_template.html"


def render_template(html_template: str, context: dict) -> str:
    with open(os.path.join(TEMPLATE_DIR, html_template), "r", encoding="utf-8") as f:
        template_str = f.read()
    return Template(template_str).render(**context)


def send_email(
    settings: Settings,
    recipient_email: str,
    subject: str,
    html_template: str,
    context: dict,
):
    """
    Generic email sender using Postmark + HTML templates.

    Args:
        settings: Service settings (Postmark token and sender).
        recipient_email: Email of recipient.
        subject: Email subject.
        html_template: HTML file inside /templates.
        context: Dict of placeholders for template.
    """
    if not settings.postmark_api_token:
        raise ExternalServiceError("POSTMARK_API_TOKEN missing in environment.")
    postmark = PostmarkClient(server_token=settings.postmark_api_token)
    body = render_template(html_template, context)

    postmark.emails.send(
        From=settings.sender_email,
        To=recipient_email,
        Subject=subject,
        HtmlBody=body,
    )
    logger.info("✅ Email sent to %s (%s)", recipient_email, subject)


def invoice_context(invoice: Invoice, settings: Settings) -> dict:
    return {
        "invoice_number": invoice.invoice_number or invoice.id,
        "currency": invoice.currency,
        "items": [
            {"description": i.description, "quantity": i.quantity, "rate": i.rate, "amount": i.amount}
            for i in invoice.items
        ],
        "subtotal": invoice.subtotal,
        "tax_amount": invoice.tax_amount,
        "discount_amount": invoice.discount_amount,
        "total_amount": invoice.total_amount,
        "paid_amount": invoice.paid_amount,
        "balance_due": invoice.balance_due,
        "invoice_date": format_date(invoice.invoice_date),
        "due_date": format_date(invoice.due_date),
        "notes": invoice.notes,
        "view_url": f"{settings.frontend_url.rstrip('/')}/public/invoice/{invoice.share_id}",
    }


class InvoiceMailer:
    """
    Outbound invoice e-mail. dispatch_* calls are fire-and-forget: they run
    on a small worker pool, retry a bounded number of times and only log the
    final failure.
    """

    def __init__(self, settings: Settings, resolve_recipient: Optional[Callable[[Invoice], Optional[str]]] = None,
                 sender: Callable = send_email, max_workers: int = 2):
        self.settings = settings
        self.resolve_recipient = resolve_recipient or (lambda invoice: invoice.client_email)
        self.sender = sender
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mailer")

    def _deliver(self, invoice: Invoice, subject: str, template: str, recipient: Optional[str]) -> bool:
        recipient = recipient or self.resolve_recipient(invoice)
        if not recipient:
            logger.warning("⚠️ No recipient for invoice %s, e-mail skipped", invoice.id)
            return False

        context = invoice_context(invoice, self.settings)
        attempts = self.settings.mail_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.sender(self.settings, recipient, subject, template, context)
                return True
            except Exception as e:
                logger.warning("⚠️ E-mail for invoice %s failed (attempt %d/%d): %s",
                               invoice.id, attempt, attempts, e)
                if attempt < attempts:
                    time.sleep(self.settings.mail_retry_delay_seconds)
        logger.error("❌ Giving up on e-mail for invoice %s after %d attempts", invoice.id, attempts)
        return False

    def send_invoice(self, invoice: Invoice, recipient: Optional[str] = None) -> bool:
        subject = f"Invoice {invoice.invoice_number or invoice.id}"
        return self._deliver(invoice, subject, INVOICE_TEMPLATE, recipient)

    def send_payment_reminder(self, invoice: Invoice, recipient: Optional[str] = None) -> bool:
        subject = f"Payment reminder: invoice {invoice.invoice_number or invoice.id} is overdue"
        return self._deliver(invoice, subject, REMINDER_TEMPLATE, recipient)

    def dispatch_invoice(self, invoice: Invoice, recipient: Optional[str] = None) -> Future:
        return self.executor.submit(self.send_invoice, invoice, recipient)

    def dispatch_reminder(self, invoice: Invoice, recipient: Optional[str] = None) -> Future:
        return self.executor.submit(self.send_payment_reminder, invoice, recipient)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
