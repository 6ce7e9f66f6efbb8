"""Time utilities for the copy trading engine."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Get current UTC time as an RFC 3339 string."""
    return utc_now().isoformat()


def parse_iso(ts: str) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp.

    Args:
        ts: Timestamp string, "Z" suffix allowed

    Returns:
        Timezone-aware datetime, or None if unparseable
    """
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def day_key(ts: str) -> str:
    """
    Get the UTC calendar day of a timestamp.

    Returns:
        Day as "YYYY-MM-DD", or "unknown" if the timestamp is unparseable
    """
    dt = parse_iso(ts)
    if dt is None:
        return "unknown"
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")


def epoch_seconds(ts: str) -> Optional[int]:
    """Convert an RFC 3339 timestamp to epoch seconds."""
    dt = parse_iso(ts)
    return int(dt.timestamp()) if dt else None
