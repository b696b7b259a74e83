"""Millisecond timestamp helpers."""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone


MS_PER_MINUTE = 60_000


def now_mts() -> int:
    """Current UTC time in milliseconds."""
    return int(time.time() * 1000)


def diff_in_minutes(later: int | float, earlier: int | float) -> int:
    """Whole minutes between two timestamps, truncated toward zero."""
    return math.trunc((later - earlier) / MS_PER_MINUTE)


def format_mts(mts: int | float | None) -> str:
    """Render a timestamp as an ISO-8601 UTC string ("-" for None)."""
    if mts is None:
        return "-"
    dt = datetime.fromtimestamp(mts / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")
