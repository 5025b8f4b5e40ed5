"""
utils/time_utils.py

Purpose: Time and expiry helpers

- Naive-UTC "now" (matches what MongoDB hands back)
- Gateway unix timestamps to datetimes
- Calendar month arithmetic for plan periods
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    """
    Converts a gateway unix timestamp (seconds) to naive UTC.
    """
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def add_months(start: datetime, months: int) -> datetime:
    """
    Adds calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29).
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def is_lapsed(period_end: Optional[datetime], now: datetime, grace_minutes: int = 0) -> bool:
    """
    True once period_end (plus grace) is in the past.
    """
    if period_end is None:
        return False
    return now > period_end + timedelta(minutes=grace_minutes)


def is_future(moment: Optional[datetime], now: datetime) -> bool:
    return moment is not None and moment > now
