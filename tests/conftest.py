from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from linkingest.core.config import Settings
from linkingest.services.store import InMemoryStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(job_max_attempts=3, job_retry_base_seconds=5, job_retry_max_seconds=300, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=None,
        fetch_max_retries=0,
        fetch_retry_delay_seconds=0.0,
        otel_enabled=False,
    )
