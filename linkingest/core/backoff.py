from __future__ import annotations

from datetime import datetime, timedelta, timezone


def compute_retry_delay_seconds(attempts: int, *, base_seconds: int, max_seconds: int) -> int:
    """Exponential backoff ``base * 2**attempts`` capped at ``max_seconds``."""
    if base_seconds <= 0:
        return 0
    exponent = max(0, attempts)
    if exponent >= 32:
        return max(0, max_seconds)
    return max(0, min(base_seconds * (2**exponent), max_seconds))


def next_run_at(
    attempts: int,
    *,
    base_seconds: int,
    max_seconds: int,
    now: datetime | None = None,
) -> datetime:
    current = now or datetime.now(timezone.utc)
    delay = compute_retry_delay_seconds(attempts, base_seconds=base_seconds, max_seconds=max_seconds)
    return current + timedelta(seconds=delay)
