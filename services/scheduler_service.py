"""
Background Scheduler Service for recurring billing

This service runs scheduled tasks automatically:
- Scans for due recurring schedules every SCHEDULER_INTERVAL_SECONDS and
  generates their invoices
- Announces newly overdue invoices once an hour
"""

import logging

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from reqResVal_models.billing_models import utc_now
from settings import get_settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None

# job id -> outcome of its most recent run
last_runs = {}


def _record(job_id: str, ok: bool, result: dict) -> None:
    last_runs[job_id] = {"at": utc_now().isoformat(), "ok": ok, **result}


def process_due_schedules_job():
    """
    Scheduled job: generate invoices for every ACTIVE schedule whose
    nextRunAt has passed. Errors are logged; the next tick retries.
    """
    try:
        from services.registry import get_recurring_service

        summary = get_recurring_service().process_due()
        _record("process_due_schedules", summary.failed == 0,
                {"generated": summary.generated, "skipped": summary.skipped, "failed": summary.failed})
        return summary
    except Exception as e:
        logger.exception("❌ Error in scheduled task 'process_due_schedules_job'")
        _record("process_due_schedules", False, {"error": str(e)})
        return None


def overdue_sweep_job():
    """
    Scheduled job that announces invoices which have become overdue
    (invoice.overdue event + reminder e-mail, once per invoice).
    """
    try:
        from services.registry import get_invoice_service

        result = get_invoice_service().sweep_overdue()
        logger.info("✅ Overdue sweep completed: %s checked, %s newly overdue",
                    result.get("checked", 0), result.get("notified", 0))
        _record("overdue_sweep", True, result)
        return result
    except Exception as e:
        logger.exception("❌ Error in scheduled task 'overdue_sweep_job'")
        _record("overdue_sweep", False, {"error": str(e)})
        return None


def start_scheduler(run_on_startup=False):
    """
    Initializes and starts the background scheduler.

    Args:
        run_on_startup: If True, runs both jobs once before scheduling them
    """
    global scheduler

    if scheduler is not None:
        logger.warning("⚠️ Scheduler already running")
        return scheduler

    settings = get_settings()
    tz = pytz.timezone(settings.scheduler_timezone)

    try:
        if run_on_startup:
            logger.info("🔥 Running due-schedule scan and overdue sweep on startup...")
            process_due_schedules_job()
            overdue_sweep_job()

        scheduler = BackgroundScheduler(timezone=tz)

        # One scan at a time; a backlog of missed ticks collapses into one run
        scheduler.add_job(
            func=process_due_schedules_job,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds, timezone=tz),
            id='process_due_schedules',
            name='Generate Invoices for Due Recurring Schedules',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.scheduler_interval_seconds,
        )

        scheduler.add_job(
            func=overdue_sweep_job,
            trigger=CronTrigger(minute=settings.overdue_sweep_minute, timezone=tz),
            id='overdue_sweep',
            name='Announce Overdue Invoices',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600  # If missed, can run within 1 hour
        )

        scheduler.start()

        logger.info("✅ Background Scheduler Started Successfully")
        for job in scheduler.get_jobs():
            logger.info("   - %s: Next run at %s", job.name, job.next_run_time)
        return scheduler

    except Exception:
        logger.exception("❌ Failed to start scheduler")
        scheduler = None
        raise


def stop_scheduler():
    """
    Gracefully stops the background scheduler.
    Should be called on application shutdown.
    """
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=True)
        scheduler = None
        logger.info("✅ Background Scheduler stopped")
    else:
        logger.warning("⚠️ Scheduler was not running")


def get_scheduler_status():
    """
    Scheduler health for the status endpoint: whether it runs, when each
    job fires next and how its last run went.
    """
    if scheduler is None:
        return {"status": "stopped", "jobs": [], "lastRuns": dict(last_runs)}

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "nextRun": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
            "lastRun": last_runs.get(job.id),
        }
        for job in scheduler.get_jobs()
    ]
    return {"status": "running", "timezone": str(scheduler.timezone), "jobs": jobs, "lastRuns": dict(last_runs)}
