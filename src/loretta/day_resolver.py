"""Calendar-day resolution used by rollover, streaks and dose slots.

Every "what day is it for this user" question goes through here so that
day boundaries are computed the same way everywhere.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loretta.errors import ValidationError

WEEKDAY_TOKENS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name. Raises ValidationError if unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}") from exc


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


def local_today(tz_name: str, now: datetime | None = None) -> date:
    """The user's local calendar date at ``now``."""
    if now is None:
        now = utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(tz_name)).date()


def previous_day(day: date) -> date:
    return day - timedelta(days=1)


def weekday_token(day: date) -> str:
    """Lowercase English weekday name, e.g. 'monday'."""
    return WEEKDAY_TOKENS[day.weekday()]


def week_start(day: date) -> date:
    """Get the Monday of the ISO week containing day."""
    return day - timedelta(days=day.weekday())


def period_start(frequency: str, day: date) -> date:
    """First day of the rollover period a mission of ``frequency`` lives in."""
    if frequency == "weekly":
        return week_start(day)
    return day


def trailing_days(as_of: date, window_days: int) -> list[date]:
    """The ``window_days`` dates ending at ``as_of`` (inclusive), oldest first."""
    if window_days < 1:
        raise ValidationError("window_days must be at least 1")
    return [as_of - timedelta(days=offset) for offset in range(window_days - 1, -1, -1)]


def days_between(start: date, end: date) -> list[date]:
    """Dates from start to end inclusive; empty when start > end."""
    if start > end:
        return []
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
