import pendulum
from datetime import datetime, timezone
from typing import Optional


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _plain(dt: pendulum.DateTime) -> datetime:
    # pendulum.DateTime subclasses datetime; store plain stdlib values
    return datetime(
        dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second, dt.microsecond,
        tzinfo=timezone.utc,
    )


def add_days(value: datetime, days: int) -> datetime:
    return _plain(pendulum.instance(to_utc(value)).add(days=days))


def shift(value: datetime, *, days: int = 0, weeks: int = 0, months: int = 0, years: int = 0) -> datetime:
    """
    Calendar shift in UTC. Month and year steps clamp to the last valid day
    of the target month (Jan 31 + 1 month -> Feb 28/29, Feb 29 + 1 year -> Feb 28).
    """
    moved = pendulum.instance(to_utc(value)).add(years=years, months=months, weeks=weeks, days=days)
    return _plain(moved)


def format_date(value: Optional[datetime], fmt: str = "%d-%m-%Y") -> str:
    """Date-only rendering used by e-mail templates."""
    if value is None:
        return ""
    return to_utc(value).strftime(fmt)


def start_of_month(value: datetime) -> datetime:
    return _plain(pendulum.instance(to_utc(value)).start_of("month"))
