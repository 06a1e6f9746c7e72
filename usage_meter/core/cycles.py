"""
Billing cycle arithmetic.

Single definition of "calendar day", "calendar month" and "rolling cycle"
shared by every storage adapter. All boundaries are computed in UTC.

A daily reset is due when the last reset happened before the start of
the current UTC day; a monthly reset is due when it happened before the
first of the current UTC month. Comparing against the period start (and
never against "different from") keeps reset timestamps moving forward only.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

ROLLING_CYCLE_DAYS = 30


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Canonical storage form: UTC ISO-8601 with microseconds.

    Fixed width so stored strings compare in time order.
    """
    return to_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp back into aware UTC."""
    return to_utc(datetime.fromisoformat(value))


def start_of_day(now: datetime) -> datetime:
    """Midnight UTC of the calendar day containing ``now``."""
    now = to_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    """Midnight UTC on the first of the calendar month containing ``now``."""
    return start_of_day(now).replace(day=1)


def start_of_next_day(now: datetime) -> datetime:
    return start_of_day(now) + timedelta(days=1)


def start_of_next_month(now: datetime) -> datetime:
    first = start_of_month(now)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def month_bounds(year: int, month: int):
    """Return the [start, end) UTC bounds of a calendar month."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    return start, start_of_next_month(start)


def daily_reset_due(last_reset: datetime, now: datetime) -> bool:
    return to_utc(last_reset) < start_of_day(now)


def monthly_reset_due(last_reset: datetime, now: datetime) -> bool:
    return to_utc(last_reset) < start_of_month(now)


def seed_cycle_renewal(created_at: datetime) -> datetime:
    """First renewal of a rolling cycle anchored at account creation."""
    return to_utc(created_at) + timedelta(days=ROLLING_CYCLE_DAYS)


def next_cycle_renewal(now: datetime) -> datetime:
    """Renewal time of a cycle that restarts at ``now``."""
    return to_utc(now) + timedelta(days=ROLLING_CYCLE_DAYS)


def cycle_reset_due(renewal_at: Optional[datetime], now: datetime) -> bool:
    if renewal_at is None:
        return False
    return to_utc(now) >= to_utc(renewal_at)
