"""UTC timestamp helpers shared by the aggregation code."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

HOUR = timedelta(hours=1)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream timestamp into an aware UTC datetime, or ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        # Epoch milliseconds are common in these feeds.
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        candidate = str(value).strip()
        if not candidate:
            return None
        if candidate.endswith(("Z", "z")):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def floor_hour(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def hour_key(value: datetime) -> str:
    return floor_hour(value).strftime("%Y-%m-%dT%H:00:00Z")


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def iter_hours(start: datetime, end: datetime) -> Iterator[datetime]:
    """Yield every hour-aligned instant from ``floor(start)`` up to ``end``."""
    current = floor_hour(start)
    while current <= end:
        yield current
        current += HOUR


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
