"""Datetime utilities for timezone-aware timestamps.

Usage:
    from libs.common.datetime_utils import utc_now

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime.

    Always use this for timestamps in the database.
    """
    return datetime.now(timezone.utc)


def local_today(tz_name: str, now: Optional[datetime] = None) -> date:
    """Return today's date in the given IANA timezone."""
    now = now or utc_now()
    return now.astimezone(ZoneInfo(tz_name)).date()


def next_business_day(tz_name: str, now: Optional[datetime] = None) -> date:
    """Tomorrow in the given timezone, pushed to Monday when it lands on a weekend."""
    candidate = local_today(tz_name, now) + timedelta(days=1)
    # weekday(): Saturday=5, Sunday=6
    if candidate.weekday() >= 5:
        candidate += timedelta(days=7 - candidate.weekday())
    return candidate
