# rallio/services/operating_hours.py
import logging
from datetime import date, datetime
from typing import Any, Mapping, NamedTuple, Optional

import pytz

from rallio.core.config import DEFAULT_VENUE_TIMEZONE

logger = logging.getLogger(__name__)


class OperatingHours(NamedTuple):
    open_hour: int
    close_hour: int


def _hour_of(value: Any) -> Optional[int]:
    """'06:00' -> 6; anything unparseable -> None."""
    if not isinstance(value, str) or ":" not in value:
        return None
    head = value.split(":", 1)[0].strip()
    if not head.isdigit():
        return None
    hour = int(head)
    if hour < 0 or hour > 24:
        return None
    return hour


def resolve_operating_hours(opening_hours: Optional[Mapping[str, Any]], day: date) -> Optional[OperatingHours]:
    """
    Look up the venue hours for the weekday of `day`.
    Returns None when the venue is closed that day (missing or malformed entry).
    Minutes are ignored; slots are whole hours.
    """
    if not opening_hours:
        return None

    entry = opening_hours.get(day.strftime("%A").lower())
    if not isinstance(entry, Mapping):
        return None

    open_hour = _hour_of(entry.get("open"))
    close_hour = _hour_of(entry.get("close"))
    if open_hour is None or close_hour is None or close_hour <= open_hour:
        return None
    return OperatingHours(open_hour, close_hour)


def venue_local_now(timezone_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Current wall-clock time at the venue as a naive datetime, comparable with
    reservation start/end columns. An explicit `now` is returned unchanged.
    """
    if now is not None:
        return now
    try:
        tz = pytz.timezone(timezone_name or DEFAULT_VENUE_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown venue timezone {timezone_name!r}, using {DEFAULT_VENUE_TIMEZONE}")
        tz = pytz.timezone(DEFAULT_VENUE_TIMEZONE)
    return datetime.now(tz).replace(tzinfo=None)


def to_venue_time(value: datetime, timezone_name: Optional[str]) -> datetime:
    """Aware datetimes are converted to venue wall-clock time; naive ones are taken as already local."""
    if value.tzinfo is None:
        return value
    try:
        tz = pytz.timezone(timezone_name or DEFAULT_VENUE_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        tz = pytz.timezone(DEFAULT_VENUE_TIMEZONE)
    return value.astimezone(tz).replace(tzinfo=None)
