from fastapi import APIRouter, Depends

from auth.session_auth import verify_session
from reqResVal_models.billing_models import RunSummary
from services.recurring_service import RecurringService
from services.registry import get_recurring_service
from services.scheduler_service import get_scheduler_status

router = APIRouter()


@router.get("/scheduler/status")
def scheduler_status(user_id: str = Depends(verify_session)):
    """
    Check the status of the background scheduler and scheduled jobs.
    """
    return get_scheduler_status()


@router.post("/scheduler/run-now", response_model=RunSummary)
def run_scheduler_now(
    user_id: str = Depends(verify_session),
    service: RecurringService = Depends(get_recurring_service),
):
    """
    Manually trigger one due-schedule scan immediately.
    """
    return service.process_due()
