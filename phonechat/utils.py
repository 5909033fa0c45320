"""
Timestamp helpers shared by the backend and the clients.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def millis_to_iso(millis: Optional[int]) -> Optional[str]:
    """Convert epoch milliseconds (as reported by the Admin SDK) to ISO-8601 UTC."""
    if millis is None:
        return None
    return format_timestamp(datetime.fromtimestamp(millis / 1000, tz=timezone.utc))
