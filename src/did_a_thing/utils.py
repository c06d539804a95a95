"""Provide utility helpers for timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

Timestamp = Union[str, int, float, datetime]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[Timestamp], *, naive_is_local: bool = False) -> Optional[datetime]:
    """Parse a timestamp into an aware datetime (None if unparseable).

    Naive values are read as UTC, which is how stored timestamps are written.
    With ``naive_is_local`` they are read in the local timezone instead, as
    typed by a user.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            # Epoch milliseconds.
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, datetime):
            dt = value
        else:
            text = str(value)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.astimezone() if naive_is_local else dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, OverflowError, OSError):
        return None


def _to_iso(value: Optional[Timestamp], *, naive_is_local: bool = False) -> Optional[str]:
    """Normalize a timestamp to a UTC ISO string (None if unparseable)."""
    dt = _parse_iso(value, naive_is_local=naive_is_local)
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def _input_iso(value: Optional[Timestamp]) -> Optional[str]:
    """Normalize a user-supplied timestamp; naive values are local time."""
    return _to_iso(value, naive_is_local=True)
