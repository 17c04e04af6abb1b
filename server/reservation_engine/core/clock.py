"""Time helpers shared by services and workers."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_in(tz_name: str, now: datetime | None = None) -> date:
    """
    Calendar date at the listing's location.

    Args:
        tz_name: IANA timezone name of the listing
        now: naive UTC instant to evaluate, defaults to the current time

    Returns:
        The local calendar date in ``tz_name``
    """
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    instant = (now or utcnow()).replace(tzinfo=timezone.utc)
    return instant.astimezone(tz).date()
