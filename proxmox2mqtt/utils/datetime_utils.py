"""
Datetime utilities for consistent timezone handling across the application.

Published timestamps are always ISO-8601 in UTC. Timestamps found in Proxmox
task logs carry no offset and are in the node's local time.
"""
from datetime import datetime, timezone
from typing import Optional

PROXMOX_LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime to ISO format with UTC timezone.

    - Naive datetimes are assumed to be UTC
    - Timezone-aware datetimes are converted to UTC

    Example:
        >>> serialize_datetime(datetime(2025, 11, 24, 5, 33, 17))
        '2025-11-24T05:33:17+00:00'
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.isoformat()


def utc_now_iso() -> str:
    """Current time as ISO-8601 UTC string."""
    return serialize_datetime(datetime.now(timezone.utc))


def parse_local_timestamp(value: str) -> Optional[float]:
    """
    Parse a "YYYY-MM-DD HH:MM:SS" log timestamp as naive local time.

    Returns:
        Epoch seconds, or None if the value does not parse
    """
    try:
        return datetime.strptime(value.strip(), PROXMOX_LOG_TIME_FORMAT).timestamp()
    except (ValueError, OverflowError, OSError):
        return None
