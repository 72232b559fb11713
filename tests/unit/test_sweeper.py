import asyncio

from seatlock.services.sweeper import ExpirySweeper
from seatlock.services.types import Actor

TRIP = "trip-42"


async def test_sweep_reclaims_only_expired(manager, store, alice, bob, clock):
    await manager.acquire(TRIP, ["1A", "1B"], alice)
    clock.advance(300)
    await manager.acquire(TRIP, ["1C"], bob)
    clock.advance(400)

    removed = await ExpirySweeper(store, clock=clock, batch_size=10).sweep_once()

    assert removed == 2
    assert [lock.seat_code for lock in await manager.trip_locks(TRIP)] == ["1C"]
    assert await ExpirySweeper(store, clock=clock).sweep_once() == 0


async def test_sweep_works_through_batches(manager, store, clock):
    for i in range(7):
        await manager.acquire(TRIP, [f"S{i}"], Actor.user(i))
    clock.advance(601)

    assert await ExpirySweeper(store, clock=clock, batch_size=3).sweep_once() == 7


async def test_sweeping_never_changes_query_results(manager, store, alice, clock):
    await manager.acquire(TRIP, ["1A"], alice)
    clock.advance(601)
    before = await manager.query(TRIP, alice)

    await ExpirySweeper(store, clock=clock).sweep_once()

    assert before == await manager.query(TRIP, alice) == []


class BrokenStore:
    def __init__(self):
        self.calls = 0

    async def purge_expired(self, now, limit=None):
        self.calls += 1
        raise RuntimeError("boom")


async def test_background_loop_survives_failures(clock):
    store = BrokenStore()
    sweeper = ExpirySweeper(store, clock=clock)

    sweeper.start(interval=0.01)
    await asyncio.sleep(0.05)
    await sweeper.stop()

    assert store.calls >= 2
