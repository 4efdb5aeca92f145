from __future__ import annotations

from datetime import timedelta
from typing import Union


def _plural(n: int, unit: str) -> str:
    return f"1 {unit}" if n == 1 else f"{n} {unit}s"


def format_ttl_verbose(ttl: Union[timedelta, int, float]) -> str:
    """Render a TTL for humans, e.g. ``"30 minutes"`` or ``"1 day 2 hours"``.

    Shows at most days, hours and minutes; minutes are dropped when hours are
    zero but days are present. Durations under a minute fall back to seconds
    and non-positive durations render as ``"expired"``.
    """
    seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
    if seconds <= 0:
        return "expired"

    total = int(seconds)
    days, total = divmod(total, 86400)
    hours, total = divmod(total, 3600)
    minutes, secs = divmod(total, 60)

    if days and hours and minutes:
        return f"{_plural(days, 'day')} {_plural(hours, 'hour')} {_plural(minutes, 'minute')}"
    if days and hours:
        return f"{_plural(days, 'day')} {_plural(hours, 'hour')}"
    if days:
        return _plural(days, "day")
    if hours:
        return _plural(hours, "hour")
    if minutes:
        return _plural(minutes, "minute")
    return _plural(secs, "second")
