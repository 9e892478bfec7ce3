"""Calendar helpers. Dates are stored as naive UTC datetimes at midnight."""

from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

Clock = Callable[[], date]


def utc_today() -> date:
    return datetime.utcnow().date()


def to_storage_datetime(value: Optional[Union[date, datetime]]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def to_date(value: Optional[Union[date, datetime]]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def add_days(value: Union[date, datetime], days: int) -> datetime:
    return to_storage_datetime(value) + timedelta(days=days)
