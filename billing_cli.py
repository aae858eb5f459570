import argparse
import logging
import sys

from services.registry import get_invoice_service, get_recurring_service
from settings import get_settings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run billing jobs once, outside the API process.")
    parser.add_argument("job", choices=["due", "overdue", "all"], nargs="?", default="due",
                        help="due: generate invoices for due recurring schedules; "
                             "overdue: announce overdue invoices; all: both")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, get_settings().log_level, logging.INFO))
    logger = logging.getLogger("billing_cli")

    try:
        if args.job in ("due", "all"):
            summary = get_recurring_service().process_due()
            logger.info("✅ Due scan: %d generated, %d skipped, %d failed",
                        summary.generated, summary.skipped, summary.failed)
            if summary.failed:
                return 1
        if args.job in ("overdue", "all"):
            result = get_invoice_service().sweep_overdue()
            logger.info("✅ Overdue sweep: %d checked, %d newly overdue", result["checked"], result["notified"])
    except Exception:
        logger.exception("❌ Job failed unexpectedly during processing")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
