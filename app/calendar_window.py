from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

# Report periods end "now" and reach back by the given delta
REPORT_PERIODS = {
    "7d": relativedelta(days=7),
    "30d": relativedelta(days=30),
    "3m": relativedelta(months=3),
    "6m": relativedelta(months=6),
    "1y": relativedelta(years=1),
}
DEFAULT_REPORT_PERIOD = "30d"

ANALYTICS_PERIODS = {"3m": 3, "6m": 6, "12m": 12, "24m": 24}
DEFAULT_ANALYTICS_PERIOD = "6m"


def get_period_window(period: Optional[str] = None, *, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Return (start, end) for a report period code such as '30d' or '6m'."""
    if now is None:
        now = datetime.utcnow()
    period = period or DEFAULT_REPORT_PERIOD
    if period not in REPORT_PERIODS:
        raise ValueError(f"Period must be one of {', '.join(REPORT_PERIODS)}")
    return now - REPORT_PERIODS[period], now


def get_analytics_window(period: Optional[str] = None, *, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Whole-month window: from the first day of the month N-1 months back until now."""
    if now is None:
        now = datetime.utcnow()
    period = period or DEFAULT_ANALYTICS_PERIOD
    if period not in ANALYTICS_PERIODS:
        raise ValueError(f"Period must be one of {', '.join(ANALYTICS_PERIODS)}")
    month_start = datetime(now.year, now.month, 1)
    return month_start - relativedelta(months=ANALYTICS_PERIODS[period] - 1), now


def month_starts(start: datetime, end: datetime) -> list[datetime]:
    current = datetime(start.year, start.month, 1)
    months = []
    while current <= end:
        months.append(current)
        current += relativedelta(months=1)
    return months


def days_in_window(start: datetime, end: datetime) -> list[date]:
    first = start.date()
    return [first + timedelta(days=i) for i in range((end.date() - first).days + 1)]


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)
