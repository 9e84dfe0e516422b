"""Timezone helpers for rendering session times in a calendar's own zone."""

import logging
from datetime import datetime
from typing import Optional

from dateutil.parser import isoparse
import pytz

logger = logging.getLogger(__name__)

WALL_CLOCK_FORMAT = "%Y-%m-%dT%H:%M:%S"

COMMON_ABBREVIATIONS = {
    'PST': 'America/Los_Angeles',
    'PDT': 'America/Los_Angeles',
    'MST': 'America/Denver',
    'MDT': 'America/Denver',
    'CST': 'America/Chicago',
    'CDT': 'America/Chicago',
    'EST': 'America/New_York',
    'EDT': 'America/New_York',
    'GMT': 'Europe/London',
    'BST': 'Europe/London',
    'CET': 'Europe/Berlin',
    'CEST': 'Europe/Berlin',
    'JST': 'Asia/Tokyo',
    'AEST': 'Australia/Sydney',
    'AEDT': 'Australia/Sydney',
}

# Outlook mailbox settings report Windows zone names
WINDOWS_TIMEZONES = {
    'Pacific Standard Time': 'America/Los_Angeles',
    'Mountain Standard Time': 'America/Denver',
    'US Mountain Standard Time': 'America/Phoenix',
    'Central Standard Time': 'America/Chicago',
    'Eastern Standard Time': 'America/New_York',
    'Atlantic Standard Time': 'America/Halifax',
    'Alaskan Standard Time': 'America/Anchorage',
    'Hawaiian Standard Time': 'Pacific/Honolulu',
    'GMT Standard Time': 'Europe/London',
    'W. Europe Standard Time': 'Europe/Berlin',
    'Romance Standard Time': 'Europe/Paris',
    'Central Europe Standard Time': 'Europe/Budapest',
    'India Standard Time': 'Asia/Kolkata',
    'China Standard Time': 'Asia/Shanghai',
    'Tokyo Standard Time': 'Asia/Tokyo',
    'AUS Eastern Standard Time': 'Australia/Sydney',
    'UTC': 'UTC',
}


def normalize_timezone(name: Optional[str]) -> str:
    """Return a valid IANA zone name for ``name``, falling back to UTC.

    Accepts IANA names, common abbreviations (``EST``) and Windows zone
    names (``Eastern Standard Time``).
    """
    if not name:
        return 'UTC'
    candidate = name.strip()
    candidate = COMMON_ABBREVIATIONS.get(candidate.upper(), candidate)
    candidate = WINDOWS_TIMEZONES.get(candidate, candidate)
    try:
        return pytz.timezone(candidate).zone
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return 'UTC'


def to_wall_clock(dt: datetime, tz_name: Optional[str]) -> str:
    """Render an instant as local wall-clock time in ``tz_name`` (no offset)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=pytz.UTC)
    tz = pytz.timezone(normalize_timezone(tz_name))
    return dt.astimezone(tz).strftime(WALL_CLOCK_FORMAT)


def from_wall_clock(value: str, tz_name: Optional[str]) -> datetime:
    """Parse a provider timestamp back into a UTC instant.

    Values carrying an offset are converted directly; naive values are
    interpreted as wall-clock time in ``tz_name``.
    """
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        tz = pytz.timezone(normalize_timezone(tz_name))
        parsed = tz.localize(parsed)
    return parsed.astimezone(pytz.UTC)


def format_display_date(dt: datetime, tz_name: Optional[str]) -> str:
    """E.g. ``Monday, January 1, 2024``."""
    local = dt.astimezone(pytz.timezone(normalize_timezone(tz_name)))
    return f"{local.strftime('%A, %B')} {local.day}, {local.year}"


def format_display_time(dt: datetime, tz_name: Optional[str]) -> str:
    """E.g. ``3:00 PM EST``."""
    local = dt.astimezone(pytz.timezone(normalize_timezone(tz_name)))
    hour = local.hour % 12 or 12
    return f"{hour}:{local.strftime('%M %p')} {local.tzname()}"
