"""Calendar-day rules for the daily login bonus and streak.

All comparisons happen on calendar days in one reference timezone
(``settings.DAY_BOUNDARY_TIMEZONE``, UTC by default). Naive timestamps are
interpreted as UTC.
"""

from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from app.config import settings

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@lru_cache(maxsize=8)
def reference_timezone(name: str | None = None) -> ZoneInfo:
    """Return the timezone that defines where one day ends and the next begins."""
    return ZoneInfo(name or settings.DAY_BOUNDARY_TIMEZONE)


def calendar_day(ts: datetime, tz: ZoneInfo) -> date:
    """Return the calendar day of *ts* in *tz*."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz).date()


def is_bonus_due(last_login_date: datetime | None, now: datetime, tz: ZoneInfo) -> bool:
    """Return *True* when *now* falls on a later calendar day than the last login."""
    return calendar_day(now, tz) > calendar_day(last_login_date or EPOCH, tz)


def next_streak(
    last_login_date: datetime | None,
    current_streak: int,
    now: datetime,
    tz: ZoneInfo,
) -> int:
    """Return the streak after a bonus granted at *now*.

    Consecutive days extend the streak, a gap restarts it at 1.
    """
    previous = calendar_day(last_login_date or EPOCH, tz)
    if previous == calendar_day(now, tz) - timedelta(days=1):
        return max(0, current_streak) + 1
    return 1
