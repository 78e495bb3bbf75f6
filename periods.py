from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from errors import ValidationError

DEFAULT_LOOKBACK_DAYS = 30


@dataclass(frozen=True)
class DateWindow:
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def resolve_window(
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> DateWindow:
    """Window used to pick transactions and payments for matching.

    Missing bounds default to the last ``lookback_days`` ending today.
    """
    today = today or date.today()
    end_date = end or today
    start_date = start or (end_date - timedelta(days=lookback_days))
    if start_date > end_date:
        raise ValidationError("Start date must be before or equal to end date")
    return DateWindow(start_date, end_date)
