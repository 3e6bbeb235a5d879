"""Timestamp helpers shared by the session store and analytics."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

# Accepted in addition to ISO 8601, treated as UTC.
_FALLBACK_FORMATS = ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_iso(value: datetime) -> str:
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    """Parse a stored timestamp into an aware UTC datetime.

    Epoch milliseconds are accepted alongside strings, since some records
    carry numeric creation times. Returns None for anything unparsable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        parsed = _parse_text(value.strip())
        if parsed is None:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_text(token: str) -> datetime | None:
    try:
        return datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _FALLBACK_FORMATS:
        try:
            return datetime.strptime(token, fmt)
        except ValueError:
            continue
    return None


def iso_to_epoch(value: Any) -> float:
    """Seconds since the epoch, or 0.0 so undated records sort last."""
    parsed = parse_iso(value)
    return parsed.timestamp() if parsed else 0.0
