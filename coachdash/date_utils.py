"""Shared timestamp helpers.

All persisted timestamps are UTC ISO-8601 strings with a fixed microsecond
width and a ``Z`` suffix, so lexical order matches chronological order.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return format_iso(utc_now())


def parse_iso(token: Any) -> datetime | None:
    if isinstance(token, datetime):
        return token if token.tzinfo else token.replace(tzinfo=timezone.utc)
    cleaned = str(token or "").strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d"):
            try:
                parsed = datetime.strptime(cleaned, fmt)
                break
            except ValueError:
                continue
        else:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def seconds_between(start: Any, end: Any) -> float:
    """Seconds from ``start`` to ``end``; 0 when either side is unparseable."""
    a = parse_iso(start)
    b = parse_iso(end)
    if not a or not b:
        return 0.0
    return (b - a).total_seconds()


def add_seconds(value: datetime, seconds: float) -> str:
    return format_iso(value + timedelta(seconds=seconds))


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    return f"{hours}h {rem // 60}m"
