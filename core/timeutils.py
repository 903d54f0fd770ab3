"""UTC helpers and calendar arithmetic for billing periods."""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values (SQLite drops tzinfo on round-trip)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole months, clamping the day to the target month length."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_month_window(now: datetime) -> Tuple[datetime, datetime]:
    current = ensure_utc(now)
    start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)


def rolling_month_window(anchor: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """Return the one-month window, stepped from ``anchor``, that contains ``now``."""

    anchor = ensure_utc(anchor)
    now = ensure_utc(now)
    if now < anchor:
        return anchor, add_months(anchor, 1)
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = add_months(anchor, months)
    if start > now:
        months -= 1
        start = add_months(anchor, months)
    return start, add_months(anchor, months + 1)


__all__ = ["add_months", "calendar_month_window", "ensure_utc", "rolling_month_window", "utcnow"]
