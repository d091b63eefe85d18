"""Shared fixtures: a controllable clock and a fresh in-memory engine."""

from datetime import datetime, timedelta, timezone

import pytest

from app.db.progress_store import InMemoryProgressStore
from app.services.progress_service import ProgressEngine


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def engine(store: InMemoryProgressStore, clock: FakeClock) -> ProgressEngine:
    return ProgressEngine(store, clock=clock, daily_bonus_coins=20, day_boundary_timezone="UTC")
