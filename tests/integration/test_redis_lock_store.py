"""
Runs the lock manager against a real Redis.

Skipped unless REDIS_URL (default redis://localhost:6379/0) answers PING.
Each test uses its own trip id so a shared Redis is safe to use.
"""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest
from redis import exceptions as redis_exceptions

from seatlock.errors import LockExpired, MaxSeatsExceeded, PermissionDenied, SeatsAlreadyLocked
from seatlock.redis_client import create_redis_client
from seatlock.services.redis_lock_store import RedisLockStore
from seatlock.services.seat_lock import SeatLockManager
from seatlock.services.sweeper import ExpirySweeper
from seatlock.services.types import Actor

pytestmark = pytest.mark.integration

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")


@pytest.fixture
async def redis_store():
    client = create_redis_client(REDIS_URL)
    try:
        await client.ping()
    except (redis_exceptions.ConnectionError, OSError):
        await client.aclose()
        pytest.skip(f"Redis not reachable at {REDIS_URL}")
    store = RedisLockStore(client)
    yield store
    await store.close()


@pytest.fixture
def trip():
    return f"it-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def redis_manager(redis_store, clock):
    return SeatLockManager(redis_store, ttl=timedelta(minutes=10), max_seats=5, clock=clock, retry_backoff=0)


async def test_acquire_conflict_and_retry(redis_manager, trip):
    a, b = Actor.user("A"), Actor.user("B")
    await redis_manager.acquire(trip, ["A1", "A2"], a)

    with pytest.raises(SeatsAlreadyLocked) as exc_info:
        await redis_manager.acquire(trip, ["A2", "A3"], b)
    assert exc_info.value.seats == ["A2"]
    assert await redis_manager.query(trip, b) == []

    await redis_manager.release(trip, ["A2"], a)
    res = await redis_manager.acquire(trip, ["A2", "A3"], b)
    assert res.seats == ["A2", "A3"]


async def test_concurrent_acquire_single_winner(redis_manager, trip):
    owners = [Actor.user(i) for i in range(25)]

    results = await asyncio.gather(
        *(redis_manager.acquire(trip, ["7C", "7D"], owner) for owner in owners), return_exceptions=True
    )

    assert len([r for r in results if not isinstance(r, Exception)]) == 1
    assert len({lock.owner for lock in await redis_manager.trip_locks(trip)}) == 1


async def test_already_held_and_ceiling(redis_manager, trip, alice, clock):
    first = await redis_manager.acquire(trip, ["1A", "1B", "1C", "1D"], alice)
    clock.advance(30)

    again = await redis_manager.acquire(trip, ["1A"], alice)
    assert again.already_held == ["1A"]
    assert again.expires_at == first.expires_at

    with pytest.raises(MaxSeatsExceeded):
        await redis_manager.acquire(trip, ["2A", "2B"], alice)
    assert len(await redis_manager.query(trip, alice)) == 4


async def test_extend_rules(redis_manager, trip, alice, bob, clock):
    await redis_manager.acquire(trip, ["1A"], alice, session_id="tab-1")
    await redis_manager.acquire(trip, ["1B"], bob)
    clock.advance(120)

    res = await redis_manager.extend(trip, ["1A"], alice)
    assert res.expires_at == clock.now + redis_manager.ttl

    with pytest.raises(PermissionDenied):
        await redis_manager.extend(trip, ["1A"], alice, session_id="tab-2")
    with pytest.raises(PermissionDenied):
        await redis_manager.extend(trip, ["1A", "1B"], alice)

    clock.advance(601)
    with pytest.raises(LockExpired):
        await redis_manager.extend(trip, ["1A"], alice)


async def test_expired_seat_is_free(redis_manager, trip, alice, bob, clock):
    await redis_manager.acquire(trip, ["1A", "1B", "1C", "1D", "1E"], alice)
    clock.advance(600)

    res = await redis_manager.acquire(trip, ["1A"], bob)

    assert res.seats == ["1A"]
    # alice's expired locks no longer count towards her ceiling
    assert (await redis_manager.acquire(trip, ["2A", "2B", "2C", "2D", "2E"], alice)).seats


async def test_release_all_and_admin_release(redis_manager, trip, alice, bob):
    await redis_manager.acquire(trip, ["1A"], alice, session_id="tab-1")
    await redis_manager.acquire(trip, ["1B"], alice, session_id="tab-2")
    await redis_manager.acquire(trip, ["1C"], bob)

    assert (await redis_manager.release_all(trip, alice, session_id="tab-1")).released_seats == ["1A"]
    assert (await redis_manager.admin_release(trip, ["1B", "1C"])).released_seats == ["1B", "1C"]
    assert await redis_manager.trip_locks(trip) == []


async def test_transfer_up_to_ceiling(redis_manager, trip, alice):
    guest = Actor.guest("guest-session-it01")
    await redis_manager.acquire(trip, ["B1", "B2"], guest, session_id=guest.id)
    await redis_manager.acquire(trip, ["B3", "B4", "B5", "B6"], alice)

    res = await redis_manager.transfer(trip, guest, alice, guest_session_id=guest.id)

    assert res.transferred_seats == ["B1"]
    assert res.rejected_seats == ["B2"]
    assert [lock.seat_code for lock in await redis_manager.query(trip, guest)] == ["B2"]
    assert len(await redis_manager.query(trip, alice)) == 5


async def test_sweeper_reclaims_expired_keys(redis_store, redis_manager, trip, alice, clock):
    await redis_manager.acquire(trip, ["1A", "1B"], alice)
    clock.advance(601)

    removed = await ExpirySweeper(redis_store, clock=clock).sweep_once()

    assert removed >= 2
    assert await redis_manager.trip_locks(trip) == []


async def test_seat_held_by_other_session_conflicts(redis_manager, trip, alice):
    await redis_manager.acquire(trip, ["1A"], alice, session_id="tab-1")

    with pytest.raises(SeatsAlreadyLocked) as exc_info:
        await redis_manager.acquire(trip, ["1A", "1B"], alice, session_id="tab-2")

    assert exc_info.value.seats == ["1A"]
    assert (await redis_manager.acquire(trip, ["1A"], alice, session_id="tab-1")).already_held == ["1A"]
