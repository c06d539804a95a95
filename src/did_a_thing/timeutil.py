"""Relative-time labels and refresh cadence for displayed timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .utils import Timestamp, _parse_iso

RECENT_SECONDS = 3600


def _elapsed_seconds(timestamp: Timestamp, now: Optional[datetime]) -> int:
    then = _parse_iso(timestamp)
    if then is None:
        raise ValueError(f"Invalid timestamp: {timestamp!r}")
    current = _parse_iso(now) if now is not None else datetime.now(timezone.utc)
    return max(0, int((current - then).total_seconds()))


def format_time_since(timestamp: Timestamp, now: Optional[datetime] = None) -> str:
    """Compact age label: ``Just now``, ``5m``, ``3h``, ``2d``, ``4mo``, ``1y``."""
    seconds = _elapsed_seconds(timestamp, now)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    months = days // 30
    years = days // 365

    if seconds < 60:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m"
    if hours < 24:
        return f"{hours}h"
    if days < 30:
        return f"{days}d"
    if months < 12:
        return f"{months}mo"
    return f"{years}y"


def format_date_time(timestamp: Timestamp) -> str:
    """Local-time label such as ``Oct 19, 2026, 08:05``."""
    dt = _parse_iso(timestamp)
    if dt is None:
        raise ValueError(f"Invalid timestamp: {timestamp!r}")
    local = dt.astimezone()
    return f"{local:%b} {local.day}, {local:%Y, %H:%M}"


def get_update_interval(timestamp: Timestamp, now: Optional[datetime] = None) -> int:
    """Seconds until a label for *timestamp* is worth re-rendering."""
    seconds = _elapsed_seconds(timestamp, now)
    if seconds < 60:
        return 1
    if seconds < 3600:
        return 60
    if seconds < 86400:
        return 300
    return 3600


def is_recent(timestamp: Timestamp, now: Optional[datetime] = None) -> bool:
    return _elapsed_seconds(timestamp, now) < RECENT_SECONDS
