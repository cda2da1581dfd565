from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def key(self) -> str:
        return period_key(self.start)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def period_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def next_month_start(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def month_period(today: Optional[date] = None) -> Period:
    today = today or local_today()
    first = today.replace(day=1)
    end = next_month_start(first) - date.resolution
    return Period(period_key(first), first, end)


def is_last_day_of_month(today: date) -> bool:
    return (today + timedelta(days=1)).day == 1


def days_ceil(start: datetime, end: datetime) -> int:
    """Whole days between two instants, rounding any partial day up."""
    seconds = (end - start).total_seconds()
    whole, rest = divmod(seconds, 86400)
    return int(whole) + (1 if rest > 0 else 0)


def to_local_naive(value: datetime) -> datetime:
    """Aware instants become naive wall-clock time in the configured zone."""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)
