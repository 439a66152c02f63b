"""
Timezone utilities for store-aware date/time handling.

Timestamps are stored as naive UTC. Reports and "today" filters are computed
in the store's local timezone so a sale rung up at 22:00 local time is not
counted on the next UTC day.
"""
from datetime import datetime, date, time, timedelta, timezone
from typing import Optional
import pytz

from config import settings


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_store_timezone(store_timezone: Optional[str] = None) -> pytz.BaseTzInfo:
    """
    Get pytz timezone object for the store.

    Args:
        store_timezone: Timezone string (e.g., "America/Sao_Paulo"); defaults to settings

    Returns:
        pytz timezone object
    """
    try:
        return pytz.timezone(store_timezone or settings.STORE_TIMEZONE)
    except pytz.exceptions.UnknownTimeZoneError:
        # Fallback to UTC if invalid timezone
        return pytz.UTC


def get_store_today(store_timezone: Optional[str] = None) -> date:
    """Current date in the store's timezone"""
    tz = get_store_timezone(store_timezone)
    return datetime.now(pytz.UTC).astimezone(tz).date()


def local_day_bounds_utc(day: date, store_timezone: Optional[str] = None) -> tuple[datetime, datetime]:
    """
    UTC bounds [start, end) of a local calendar day, as naive datetimes.

    Example:
        For Sao Paulo (UTC-3), 2024-05-10 maps to
        2024-05-10 03:00 UTC .. 2024-05-11 03:00 UTC
    """
    tz = get_store_timezone(store_timezone)
    start_local = tz.localize(datetime.combine(day, time.min))
    end_local = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
    return (
        start_local.astimezone(pytz.UTC).replace(tzinfo=None),
        end_local.astimezone(pytz.UTC).replace(tzinfo=None),
    )


def local_range_bounds_utc(start: date, end: date, store_timezone: Optional[str] = None) -> tuple[datetime, datetime]:
    """UTC bounds covering local days start..end inclusive"""
    range_start, _ = local_day_bounds_utc(start, store_timezone)
    _, range_end = local_day_bounds_utc(end, store_timezone)
    return range_start, range_end


def utc_to_store_date(utc_dt: datetime, store_timezone: Optional[str] = None) -> date:
    """Convert a naive UTC timestamp to the store's local date"""
    tz = get_store_timezone(store_timezone)
    if utc_dt.tzinfo is None:
        utc_dt = pytz.UTC.localize(utc_dt)
    return utc_dt.astimezone(tz).date()
