from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    # Days past the end of a short month snap to its last day.
    day = min(desired_day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(
    frequency: Frequency, from_date: date, *, anchor_day: Optional[int] = None
) -> Optional[date]:
    """Next occurrence after ``from_date``, or None for one-off items.

    ``anchor_day`` keeps month-based schedules on their original day of month
    after passing through a shorter month (Jan 31 -> Feb 29 -> Mar 31).
    """
    if frequency == Frequency.once:
        return None
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.biweekly:
        return from_date + timedelta(weeks=2)

    desired_day = anchor_day or from_date.day
    if frequency == Frequency.monthly:
        return _add_months(from_date, 1, desired_day=desired_day)
    if frequency == Frequency.quarterly:
        return _add_months(from_date, 3, desired_day=desired_day)
    return _add_months(from_date, 12, desired_day=desired_day)
