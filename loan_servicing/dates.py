"""
Business Calendar Helpers

Date arithmetic for due dates and cycles. "Today" is always the calendar
date in the business timezone, never the server's local date.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo
import calendar

from .config import get_config
from .errors import ValidationError

# Sentinel due date carried by the single open-ended installment
OPEN_ENDED_DUE_SENTINEL = date(2099, 12, 31)


def business_today(tz_name: Optional[str] = None) -> date:
    """Current date in the business timezone"""
    if tz_name is None:
        tz_name = get_config().business_timezone
    return datetime.now(ZoneInfo(tz_name)).date()


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def days_between(start: date, end: date) -> int:
    """Calendar days from start to end (negative when end is earlier)"""
    return (end - start).days


def iter_days(start: date, end: date):
    """Yield every date from start through end inclusive"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_date(value: Union[str, date, datetime, None], field_name: str = "date") -> Optional[date]:
    """Parse an ISO date (YYYY-MM-DD); None passes through"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}: {value!r} (expected YYYY-MM-DD)",
            code="INVALID_DATE"
        )
