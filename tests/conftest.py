import os
from datetime import datetime, timedelta, timezone

# settings are read at import time; pin them before anything imports seatlock
os.environ.setdefault("LOCK_STORE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest  # noqa: E402

from seatlock.services.lock_store import InMemoryLockStore  # noqa: E402
from seatlock.services.seat_lock import SeatLockManager  # noqa: E402
from seatlock.services.types import Actor  # noqa: E402

TRIP = "trip-42"
GUEST_SESSION = "guest-session-0001"


class FakeClock:
    """Manually advanced clock so expiry can be tested without sleeping."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryLockStore()


@pytest.fixture
def manager(store, clock):
    return SeatLockManager(store, ttl=timedelta(minutes=10), max_seats=5, max_batch=10, clock=clock, retry_backoff=0)


@pytest.fixture
def alice():
    return Actor.user(1)


@pytest.fixture
def bob():
    return Actor.user(2)


@pytest.fixture
def guest():
    return Actor.guest(GUEST_SESSION)
