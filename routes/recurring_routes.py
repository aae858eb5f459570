from typing import List

from fastapi import APIRouter, Depends, Response

from auth.session_auth import verify_session
from reqResVal_models.billing_models import (
    Invoice,
    RecurringSchedule,
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
)
from services.invoice_service import InvoiceService
from services.recurring_service import RecurringService
from services.registry import get_invoice_service, get_recurring_service

router = APIRouter()


@router.post("", response_model=RecurringSchedule, status_code=201)
def create_schedule(
    body: RecurringScheduleCreate,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.create_schedule(user_id, body)


@router.get("", response_model=List[RecurringSchedule])
def list_schedules(
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.list_schedules(user_id)


@router.get("/{schedule_id}", response_model=RecurringSchedule)
def get_schedule(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.get_schedule(schedule_id, user_id)


@router.patch("/{schedule_id}", response_model=RecurringSchedule)
def update_schedule(
    schedule_id: str,
    body: RecurringScheduleUpdate,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.update_schedule(schedule_id, user_id, body)


@router.post("/{schedule_id}/pause", response_model=RecurringSchedule)
def pause_schedule(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.pause_schedule(schedule_id, user_id)


@router.post("/{schedule_id}/resume", response_model=RecurringSchedule)
def resume_schedule(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.resume_schedule(schedule_id, user_id)


@router.post("/{schedule_id}/cancel", response_model=RecurringSchedule)
def cancel_schedule(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    return service.cancel_schedule(schedule_id, user_id)


@router.post("/{schedule_id}/run-now", response_model=Invoice, status_code=201)
def run_schedule_now(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    """Generate the next occurrence now. 409 when the schedule is not ACTIVE or is exhausted."""
    return service.run_now(schedule_id, user_id)


@router.get("/{schedule_id}/invoices", response_model=List[Invoice])
def list_generated_invoices(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    schedules: RecurringService = Depends(get_recurring_service),
    invoices: InvoiceService = Depends(get_invoice_service),
):
    schedules.get_schedule(schedule_id, user_id)
    return invoices.list_invoices(user_id, schedule_id=schedule_id)


@router.delete("/{schedule_id}", status_code=204)
def delete_schedule(
    schedule_id: str,
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    service.delete_schedule(schedule_id, user_id)
    return Response(status_code=204)
