"""
TimeManager - lightweight time utilities for consistent timestamps across modules.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime, truncated to milliseconds."""
    current = datetime.now(timezone.utc)
    return current.replace(microsecond=(current.microsecond // 1000) * 1000)


def format_timestamp(instant: datetime) -> str:
    """Render an instant as ISO-8601 UTC with millisecond precision and a 'Z' suffix."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Accepts a trailing 'Z'. Naive values are treated as UTC.
    Raises ValueError for unparseable input.
    """
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
