"""Millisecond timestamp helpers. Day and month boundaries are UTC."""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def _utc(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, timezone.utc)


def day_key(ms: int) -> str:
    """``YYYY-MM-DD`` of the UTC day containing ``ms``."""
    return _utc(ms).strftime("%Y-%m-%d")


def start_of_day_ms(ms: int) -> int:
    return ms - (ms % DAY_MS)


def is_day_aligned_range(start_ms: int, end_ms: int) -> bool:
    """True when [start, end] covers whole UTC days exactly."""
    return start_ms % DAY_MS == 0 and (end_ms + 1) % DAY_MS == 0 and end_ms > start_ms


def start_of_month_ms(ms: int) -> int:
    dt = _utc(ms)
    start = datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)
    return int(start.timestamp() * 1000)


def hour_of_day(ms: int, utc_offset_minutes: int = 0) -> int:
    return (_utc(ms) + timedelta(minutes=utc_offset_minutes)).hour
