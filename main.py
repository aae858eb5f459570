import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from routes import (
    event_routes,
    invoice_routes,
    payment_routes,
    public_routes,
    recurring_routes,
    scheduler_routes,
    webhook_routes,
)
from services.errors import BillingError, BillingValidationError, NotFoundError, StateConflictError
from settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup and shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting application...")
    from services.scheduler_service import start_scheduler, stop_scheduler
    from services import registry

    if settings.scheduler_enabled:
        start_scheduler(run_on_startup=False)
    else:
        logger.warning("⚠️ Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield  # Application runs here

    logger.info("🛑 Shutting down application...")
    if settings.scheduler_enabled:
        stop_scheduler()
    registry.shutdown()


app = FastAPI(
    title="Billing & Payments Service",
    lifespan=lifespan
)

# Enable CORS (so your frontend can call the backend)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, exc: BillingError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.message, "details": exc.details},
    )


@app.exception_handler(BillingValidationError)
async def validation_error_handler(request: Request, exc: BillingValidationError):
    return _error_response(422, exc)


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    return _error_response(409, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    logger.error("❌ %s: %s", type(exc).__name__, exc.message)
    return _error_response(502, exc)


# Include routers
app.include_router(invoice_routes.router, tags=["Invoices"])
app.include_router(public_routes.router, tags=["Public"])
app.include_router(payment_routes.router, prefix="/payments", tags=["Payments"])
app.include_router(recurring_routes.router, prefix="/recurring-invoices", tags=["Recurring Invoices"])
app.include_router(webhook_routes.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(event_routes.router, tags=["Notifications"])
app.include_router(scheduler_routes.router, tags=["Scheduler"])


@app.get("/")
def root():
    return {"message": "Billing & Payment API is running 🚀"}
