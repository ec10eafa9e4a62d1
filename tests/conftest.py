"""Shared test fixtures and configuration.

Sets up fake environment variables before medminder.config is imported,
and provides common fixtures: a temp key-value DB, a controllable clock
and a notifier that records what it was asked to deliver.
"""

import os

# Patch env vars BEFORE any medminder imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("QUIET_HOURS_ENABLED", "false")

from datetime import datetime, timedelta

import pytest


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


class FakeNotifier:
    """NotificationPort double: records schedule/cancel calls, returns handles."""

    def __init__(self):
        self.scheduled = []       # (payload, trigger_time, handle)
        self.cancelled = []
        self.cancel_all_calls = 0
        self.fail = False
        self._counter = 0

    async def schedule(self, payload, trigger_time=None):
        if self.fail:
            from medminder.ports.notification_port import DeliveryError
            raise DeliveryError("provider down")
        self._counter += 1
        handle = f"h{self._counter}"
        self.scheduled.append((payload, trigger_time, handle))
        return handle

    async def cancel(self, handle):
        self.cancelled.append(handle)

    async def cancel_all(self):
        self.cancel_all_calls += 1

    def immediate(self):
        return [p for p, when, _ in self.scheduled if when is None]

    def timed(self):
        return [(p, when) for p, when, _ in self.scheduled if when is not None]


@pytest.fixture
def kv(tmp_path):
    """Return a SqliteKeyValueStore backed by a temp file."""
    from medminder.data.db import SqliteKeyValueStore
    return SqliteKeyValueStore(db_path=str(tmp_path / "test_medminder.db"))


@pytest.fixture
def clock():
    """A clock pinned to Wednesday 2024-01-10 07:00."""
    return FakeClock(datetime(2024, 1, 10, 7, 0))


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def schedule_store(kv):
    from medminder.data.stores import ScheduleStore
    return ScheduleStore(kv)


@pytest.fixture
def record_store(kv, clock):
    from medminder.data.stores import DoseRecordStore
    return DoseRecordStore(kv, retention_days=90, clock=clock)


@pytest.fixture
def metformin():
    """Metformin 500 mg at 08:00 and 20:00."""
    from medminder.data.stores import create_medication
    return create_medication("Metformin", "500", "mg", ["08:00", "20:00"])
