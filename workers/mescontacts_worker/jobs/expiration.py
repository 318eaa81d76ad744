from __future__ import annotations

from datetime import datetime, timedelta, timezone
import random


def next_run_at(now: datetime, *, hour_utc: int, minute_utc: int = 0) -> datetime:
    """Next daily slot strictly after ``now``."""
    current = now.astimezone(timezone.utc)
    candidate = current.replace(hour=hour_utc, minute=minute_utc, second=0, microsecond=0)
    if candidate <= current:
        candidate += timedelta(days=1)
    return candidate


def seconds_until(target: datetime, now: datetime) -> float:
    return max((target - now).total_seconds(), 0.0)


def next_backoff(previous: float, *, initial: float, maximum: float, jitter: float | None = None) -> float:
    if previous <= 0:
        return min(initial, maximum)
    factor = 2.0 + (random.uniform(0.0, 0.5) if jitter is None else jitter)
    return min(previous * factor, maximum)
