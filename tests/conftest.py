"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskclock.scheduler.engine import SchedulerEngine
from taskclock.scheduler.store import ScheduleStore

START = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock; call it to read the time, advance() to move it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(tmp_path: Path) -> ScheduleStore:
    """Create a ScheduleStore backed by a temp database."""
    return ScheduleStore(db_path=tmp_path / "test.db")


@pytest.fixture
def engine(store: ScheduleStore, clock: FakeClock) -> SchedulerEngine:
    return SchedulerEngine(store, timezone="UTC", clock=clock)
