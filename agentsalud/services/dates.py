"""Calendar and timezone helpers.

Calendar dates (``YYYY-MM-DD``) stay :class:`datetime.date` values end to end.
They are never turned into UTC midnights, which shifts them one day back for
organizations west of Greenwich.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agentsalud.core.config import settings
from agentsalud.errors import ValidationFailed

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


class _HasTimezone(Protocol):
    timezone: str | None


def utcnow() -> datetime:
    """Current instant; every business rule reads the clock through here."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Coerce a datetime into UTC timezone-aware form."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def organization_timezone(organization: _HasTimezone | None) -> ZoneInfo:
    """Return the organization timezone, falling back to application default."""

    tz_name = (organization.timezone if organization else None) or settings.timezone
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_now(organization: _HasTimezone | None, now: datetime | None = None) -> datetime:
    """Current wall clock in the organization's timezone."""

    reference = ensure_utc(now or utcnow())
    return reference.astimezone(organization_timezone(organization))


def organization_today(
    organization: _HasTimezone | None, now: datetime | None = None
) -> date:
    """Calendar date the organization is currently living in."""

    return local_now(organization, now).date()


def parse_iso_date(value: str | date, *, field: str = "date") -> date:
    """Parse a strict ``YYYY-MM-DD`` string into a date."""

    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value.strip()):
        raise ValidationFailed(
            f"Invalid {field}, expected YYYY-MM-DD",
            details={"field": field, "value": str(value)},
        )
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationFailed(
            f"Invalid {field}, expected YYYY-MM-DD",
            details={"field": field, "value": value},
        ) from exc


def parse_clock(value: str | time, *, field: str = "time") -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a time."""

    if isinstance(value, time):
        return value
    match = _CLOCK_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationFailed(
            f"Invalid {field}, expected HH:MM",
            details={"field": field, "value": str(value)},
        )
    hour, minute, second = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        raise ValidationFailed(
            f"Invalid {field}, expected HH:MM",
            details={"field": field, "value": value},
        )
    return time(hour, minute, second)


def format_clock(value: time) -> str:
    return value.strftime("%H:%M")


def combine_local(target_date: date, clock: time, tz: ZoneInfo) -> datetime:
    """Interpret a local date and wall clock time as an aware UTC instant."""

    return datetime.combine(target_date, clock, tzinfo=tz).astimezone(timezone.utc)


def add_minutes(clock: time, minutes: int) -> time:
    """Shift a wall clock time; callers guarantee the result stays in the day."""

    shifted = datetime.combine(date.min, clock) + timedelta(minutes=minutes)
    return shifted.time()


def minutes_of(clock: time) -> int:
    return clock.hour * 60 + clock.minute


def day_of_week(target_date: date) -> int:
    """Weekday index with 0 = Sunday and 6 = Saturday."""

    return (target_date.weekday() + 1) % 7


def is_weekend(target_date: date) -> bool:
    return target_date.weekday() >= 5


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every calendar date from ``start`` to ``end`` inclusive."""

    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


__all__ = [
    "add_minutes",
    "combine_local",
    "day_of_week",
    "ensure_utc",
    "format_clock",
    "is_weekend",
    "iter_dates",
    "local_now",
    "minutes_of",
    "organization_timezone",
    "organization_today",
    "parse_clock",
    "parse_iso_date",
    "utcnow",
]
