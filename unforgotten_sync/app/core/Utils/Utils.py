# Utils.py
#########################################
# General Utilities Library
# Small helpers shared by the local store, the sync layer and the realtime listener.
#
####
####################
# Function List
#
# 1. utc_now() -> datetime
# 2. format_timestamp(dt) -> str
# 3. parse_timestamp(ts) -> datetime
# 4. parse_time_of_day(value) -> time
# 5. entity_key(entity_type) -> str
#
####################
#
# Import necessary libraries
import re
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional, Union
#
# 3rd-Party Imports
from loguru import logger
#
#######################################################################################################################
#
# Function Definitions


def entity_key(entity_type: Union[str, Enum]) -> str:
    """Plain string form of an entity type, safe for SQL and dict keys."""
    return entity_type.value if isinstance(entity_type, Enum) else str(entity_type)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Canonical storage format: ISO-8601 UTC, millisecond precision, 'Z' suffix."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


_FRACTION_RE = re.compile(r'(\.\d+)')


def _fromisoformat(value: str) -> datetime:
    # fromisoformat on older interpreters only takes 3 or 6 fractional digits
    normalized = value.replace('Z', '+00:00').replace(' ', 'T', 1)
    match = _FRACTION_RE.search(normalized)
    if match:
        digits = match.group(1)[1:]
        normalized = normalized.replace(match.group(1), '.' + digits[:6].ljust(6, '0'), 1)
    return datetime.fromisoformat(normalized)


def parse_timestamp(ts: Union[str, datetime, date, None]) -> Optional[datetime]:
    """
    Parse the date encodings the backend is known to send into an aware UTC datetime.

    Accepted: ISO-8601 with or without fractional seconds, with or without a
    timezone (naive values are taken as UTC), a space instead of 'T', and
    date-only values (midnight UTC). Returns None for empty input and logs a
    warning when nothing matches.
    """
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    if isinstance(ts, date):
        return datetime(ts.year, ts.month, ts.day, tzinfo=timezone.utc)
    try:
        dt = _fromisoformat(ts.strip())
    except (ValueError, AttributeError):
        logger.warning(f"Could not parse timestamp string: {ts!r}")
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_time_of_day(value: Union[str, time, None]) -> Optional[time]:
    """Parse 'HH:mm' / 'HH:mm:ss[.ffffff]' (optionally with a UTC offset) into a time."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    text = value.strip()
    for fmt in ('%H:%M:%S.%f', '%H:%M:%S', '%H:%M'):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    try:
        return time.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Could not parse time-of-day string: {value!r}")
        return None

#
# End of Utils.py
#######################################################################################################################
