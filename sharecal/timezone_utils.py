"""
Timezone utilities for the shared calendar engine.

Provides the date and time conversions used by every other module.
All instants are UTC-anchored: the calendar day of an event is the UTC
calendar day of its timestamps, and timestamps travel to and from the
store as UTC ISO-8601 strings (YYYY-MM-DDTHH:MM:SSZ).

All-day events store fixed hours (12:00 and 13:00 UTC) instead of
midnight, so that shifting the instant by any real-world UTC offset on
read never moves it onto a neighbouring calendar day.
"""

from datetime import datetime, date, time, timedelta
from typing import Optional, Union
import pytz


ALL_DAY_START = time(12, 0)
ALL_DAY_END = time(13, 0)

DATE_KEY_FORMAT = "%Y-%m-%d"
WIRE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    """Current instant as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: datetime) -> datetime:
    """
    Make a datetime timezone-aware UTC.

    Naive datetimes are taken to already be UTC; aware ones are converted.
    """
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def parse_utc(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a persisted timestamp into an aware UTC datetime.

    Accepts datetimes and ISO-8601 strings with a 'Z' suffix, an explicit
    offset, or no zone at all (read as UTC). Returns None for anything
    that cannot be parsed, so callers can fall back to derived values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_utc(dt: Optional[datetime]) -> Optional[str]:
    """Format an instant for the wire, second precision, 'Z' suffix."""
    if dt is None:
        return None
    return ensure_utc(dt).strftime(WIRE_FORMAT)


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    """
    Parse a calendar date ('YYYY-MM-DD').

    A full timestamp is accepted too; its UTC date is used.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        return datetime.strptime(text[:10], DATE_KEY_FORMAT).date()
    except ValueError:
        stamp = parse_utc(text)
        return stamp.date() if stamp else None


def date_key(day: Union[date, datetime]) -> str:
    """Bucket key for a calendar day."""
    if isinstance(day, datetime):
        day = ensure_utc(day).date()
    return day.strftime(DATE_KEY_FORMAT)


def restamp(day: date, time_source: datetime) -> datetime:
    """
    Put the time-of-day of time_source onto another calendar day.

    Used to keep the displayed hour when an event is copied onto the
    days of a span or onto custom dates.
    """
    tod = ensure_utc(time_source).timetz().replace(tzinfo=None)
    return pytz.UTC.localize(datetime.combine(day, tod))


def all_day_bounds(day: date) -> tuple[datetime, datetime]:
    """Fixed 12:00/13:00 UTC instants used to store an all-day event on day."""
    return (
        pytz.UTC.localize(datetime.combine(day, ALL_DAY_START)),
        pytz.UTC.localize(datetime.combine(day, ALL_DAY_END)),
    )


def normalize_all_day(start: datetime, end: Optional[datetime]) -> tuple[datetime, datetime]:
    """
    Normalize an all-day event's start/end to the fixed storage hours.

    The calendar days of start and end are kept; only the hours change.
    """
    start_day = ensure_utc(start).date()
    end_day = ensure_utc(end).date() if end is not None else start_day
    if end_day < start_day:
        end_day = start_day
    return all_day_bounds(start_day)[0], all_day_bounds(end_day)[1]


def iter_days(first: date, last: date):
    """Yield every calendar day from first to last, inclusive."""
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)
