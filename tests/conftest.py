"""Shared fixtures for the worktrack test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from worktrack.config import DaemonSettings
from worktrack.engine import SessionEngine
from worktrack.store import SqliteStore

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable wall clock that only moves when a test moves it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, seconds: float) -> datetime:
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    # 1s ticks, idle after 10s, session ends after 10s idle, heartbeat every 5s.
    return DaemonSettings.from_intervals(sample_seconds=1, idle_seconds=10, heartbeat_seconds=5)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "worktrack.sqlite3"


@pytest.fixture
def store(db_path):
    sqlite_store = SqliteStore(db_path, sleep=lambda _delay: None)
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def engine(store, settings, clock):
    return SessionEngine(store, settings, clock=clock)
