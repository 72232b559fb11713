import asyncio
import logging
import time
from typing import Optional

from seatlock.metrics import SWEEP_FAILURES, SWEEP_LAST_RUN, SWEEP_RECLAIMED
from seatlock.services.lock_store import LockStore
from seatlock.services.types import Clock, utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Deletes expired lock records so storage does not grow without bound.

    Correctness never depends on it: every read already treats an expired
    record as absent. The sweeper only reclaims space.
    """

    def __init__(self, store: LockStore, clock: Clock = utcnow, batch_size: Optional[int] = 500) -> None:
        self.store = store
        self.clock = clock
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        """Purge expired records in batches until a batch comes back short."""
        now = self.clock()
        total = 0
        while True:
            removed = await self.store.purge_expired(now, limit=self.batch_size)
            total += removed
            if not self.batch_size or removed < self.batch_size:
                break
        SWEEP_RECLAIMED.inc(total)
        SWEEP_LAST_RUN.set(time.time())
        if total:
            logger.info("Sweeper reclaimed %d expired seat lock(s)", total)
        return total

    async def run_forever(self, interval: float) -> None:
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # one bad sweep must not stop the loop; the next run retries
                SWEEP_FAILURES.inc()
                logger.exception("Seat lock sweep failed: %s", exc)
            await asyncio.sleep(interval)

    def start(self, interval: float) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(interval))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
