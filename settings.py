"""
Service configuration.

All recognised options live on one typed Settings object built from the
process environment (after .env has been loaded). Unknown keys are ignored.
"""

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Settings(BaseModel):
    # Persistence
    store_backend: str = Field("firestore", pattern="^(firestore|memory)$")
    service_account_file: Optional[str] = None

    # Session tokens (dashboard API + event stream)
    session_secret: str = "change-me"
    session_algorithm: str = "HS256"
    session_ttl_minutes: int = Field(60 * 12, ge=1)

    # Outbound e-mail
    postmark_api_token: Optional[str] = None
    sender_email: Optional[str] = None
    frontend_url: str = "http://localhost:5173"
    mail_max_attempts: int = Field(3, ge=1)
    mail_retry_delay_seconds: float = Field(2.0, ge=0)

    # Payment gateway
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    gateway_webhook_secret: Optional[str] = None

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = Field(60, ge=1)
    scheduler_timezone: str = "UTC"
    overdue_sweep_minute: int = Field(0, ge=0, le=59)

    # Invoicing defaults
    default_currency: str = Field("USD", min_length=3, max_length=3)
    default_payment_terms_days: int = Field(30, ge=0)

    # Change notification fan-out
    event_queue_size: int = Field(100, ge=1)
    stream_heartbeat_seconds: float = Field(15.0, gt=0)

    cors_origins: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS")
        data = {
            "store_backend": os.getenv("BILLING_STORE", "firestore"),
            "service_account_file": os.getenv("SERVICE_ACCOUNT_FILE"),
            "session_secret": os.getenv("SESSION_SECRET", "change-me"),
            "session_algorithm": os.getenv("SESSION_ALGORITHM", "HS256"),
            "session_ttl_minutes": _env_int("SESSION_TTL_MINUTES", 60 * 12),
            "postmark_api_token": os.getenv("POSTMARK_API_TOKEN"),
            "sender_email": os.getenv("SENDER_EMAIL"),
            "frontend_url": os.getenv("FRONTEND_URL", "http://localhost:5173"),
            "mail_max_attempts": _env_int("MAIL_MAX_ATTEMPTS", 3),
            "mail_retry_delay_seconds": _env_float("MAIL_RETRY_DELAY_SECONDS", 2.0),
            "stripe_secret_key": os.getenv("STRIPE_SECRET_KEY"),
            "stripe_webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET"),
            "gateway_webhook_secret": os.getenv("GATEWAY_WEBHOOK_SECRET"),
            "scheduler_enabled": _env_bool("SCHEDULER_ENABLED", True),
            "scheduler_interval_seconds": _env_int("SCHEDULER_INTERVAL_SECONDS", 60),
            "scheduler_timezone": os.getenv("SCHEDULER_TIMEZONE", "UTC"),
            "overdue_sweep_minute": _env_int("OVERDUE_SWEEP_MINUTE", 0),
            "default_currency": os.getenv("DEFAULT_CURRENCY", "USD").upper(),
            "default_payment_terms_days": _env_int("DEFAULT_PAYMENT_TERMS_DAYS", 30),
            "event_queue_size": _env_int("EVENT_QUEUE_SIZE", 100),
            "stream_heartbeat_seconds": _env_float("STREAM_HEARTBEAT_SECONDS", 15.0),
            "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
        }
        if origins:
            data["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return cls(**data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
