"""Date helpers for report windows, tied to the ``DEFAULT_TZ`` timezone."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Union

import pytz

__all__ = [
    "utcnow",
    "now_local",
    "today_local",
    "to_date",
    "date_range",
    "days_ago",
]

logger = logging.getLogger(__name__)

DEFAULT_TZ_ENV = "DEFAULT_TZ"
DEFAULT_TZ_FALLBACK = "UTC"

_tz_cache_name: Optional[str] = None
_tz_cache: pytz.BaseTzInfo = pytz.UTC


def _current_timezone() -> pytz.BaseTzInfo:
    global _tz_cache_name, _tz_cache  # pylint: disable=global-statement

    name = os.getenv(DEFAULT_TZ_ENV) or DEFAULT_TZ_FALLBACK
    if name != _tz_cache_name:
        try:
            _tz_cache = pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            logger.warning("Unknown timezone %s, falling back to %s", name, DEFAULT_TZ_FALLBACK)
            _tz_cache = pytz.timezone(DEFAULT_TZ_FALLBACK)
        _tz_cache_name = name
    return _tz_cache


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(pytz.UTC)


def now_local() -> datetime:
    return utcnow().astimezone(_current_timezone())


def today_local() -> date:
    return now_local().date()


def to_date(value: Union[str, datetime, date]) -> date:
    """Coerce ``YYYY-MM-DD`` strings, datetimes and dates to a ``date``."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_current_timezone())
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty date string")
        return date.fromisoformat(text[:10])
    raise TypeError(f"Unsupported type for date conversion: {type(value)!r}")


def date_range(start: Union[str, datetime, date], end: Union[str, datetime, date]) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""
    start_date = to_date(start)
    end_date = to_date(end)
    if start_date > end_date:
        raise ValueError("start date must not be greater than end date")
    for offset in range((end_date - start_date).days + 1):
        yield start_date + timedelta(days=offset)


def days_ago(days: int, *, today: Optional[date] = None) -> date:
    if days < 0:
        raise ValueError("days must be non-negative")
    return (today or today_local()) - timedelta(days=days)
