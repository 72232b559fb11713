import asyncio
import logging
import re
import time
from datetime import timedelta
from typing import Iterable, List, Optional

from seatlock.config import Settings, settings
from seatlock.errors import (
    InvalidInput,
    LockExpired,
    LockStoreUnavailable,
    MaxSeatsExceeded,
    PermissionDenied,
    SeatNotFound,
    SeatsAlreadyLocked,
)
from seatlock.metrics import (
    SEAT_LOCK_ATTEMPTS,
    SEAT_LOCK_LATENCY,
    SEAT_LOCK_STORE_RETRIES,
    SEAT_LOCK_TRANSFERS,
)
from seatlock.services.inventory import HttpSeatInventory, OpenInventory, SeatInventory
from seatlock.services.lock_store import InMemoryLockStore, LockStore
from seatlock.services.types import (
    AcquireResult,
    Actor,
    Clock,
    ExtendResult,
    ReassignStatus,
    ReleaseResult,
    SeatLock,
    StoreStatus,
    TransferResult,
    utcnow,
)

logger = logging.getLogger(__name__)

TRIP_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
SEAT_CODE_RE = re.compile(r"^[A-Za-z0-9._-]{1,32}$")


def _describe(owner: Actor) -> str:
    # guest ids are session tokens; keep them out of the logs
    return owner.key if not owner.is_guest else "guest"


class SeatLockManager:
    """Temporary per-seat exclusivity for shoppers filling out checkout.

    All conflict detection happens inside the store's atomic operations; the
    manager validates input, checks the seat inventory, retries transient store
    failures and turns store outcomes into typed errors.
    """

    def __init__(
        self,
        store: LockStore,
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_seats: int = 5,
        max_batch: int = 10,
        clock: Clock = utcnow,
        inventory: Optional[SeatInventory] = None,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self.store = store
        self.ttl = ttl
        self.max_seats = max_seats
        self.max_batch = max_batch
        self.clock = clock
        self.inventory = inventory or OpenInventory()
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff

    @classmethod
    def from_settings(cls, store: LockStore, config: Settings = settings, **kwargs) -> "SeatLockManager":
        kwargs.setdefault("inventory", build_inventory(config))
        return cls(
            store,
            ttl=timedelta(seconds=config.LOCK_TTL_SECONDS),
            max_seats=config.MAX_SEATS_PER_OWNER,
            max_batch=config.MAX_SEATS_PER_CALL,
            retry_attempts=config.STORE_RETRY_ATTEMPTS,
            retry_backoff=config.STORE_RETRY_BACKOFF_SECONDS,
            **kwargs,
        )

    # -- input validation -------------------------------------------------

    def _trip(self, trip_id) -> str:
        trip_id = str(trip_id).strip() if trip_id is not None else ""
        if not TRIP_ID_RE.match(trip_id):
            raise InvalidInput(f"Invalid trip id: {trip_id!r}")
        return trip_id

    def _seats(self, seat_codes: Iterable[str]) -> List[str]:
        if seat_codes is None or isinstance(seat_codes, str):
            raise InvalidInput("seat_codes must be a list of seat codes")
        seats = []
        for code in seat_codes:
            code = code.strip() if isinstance(code, str) else ""
            if not SEAT_CODE_RE.match(code):
                raise InvalidInput("Seat codes must be 1-32 letters, digits, '.', '_' or '-'")
            seats.append(code)
        seats = sorted(set(seats))
        if not seats:
            raise InvalidInput("At least one seat code is required")
        if len(seats) > self.max_batch:
            raise InvalidInput(f"At most {self.max_batch} seats can be handled per call")
        return seats

    # -- store plumbing ---------------------------------------------------

    async def _store_call(self, operation: str, fn, *args):
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await fn(*args)
            except self.store.transient_errors as exc:
                if attempt == self.retry_attempts:
                    SEAT_LOCK_ATTEMPTS.labels(operation=operation, result="error").inc()
                    logger.error("Lock store failed during %s after %d attempts: %s", operation, attempt, exc)
                    raise LockStoreUnavailable(f"Lock store unavailable during {operation}") from exc
                SEAT_LOCK_STORE_RETRIES.labels(operation=operation).inc()
                logger.warning(
                    "Transient lock store error during %s (attempt %d/%d): %s",
                    operation,
                    attempt,
                    self.retry_attempts,
                    exc,
                )
                await asyncio.sleep(self.retry_backoff * attempt)

    @staticmethod
    def _record(operation: str, result: str, start: float) -> None:
        SEAT_LOCK_ATTEMPTS.labels(operation=operation, result=result).inc()
        SEAT_LOCK_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)

    # -- operations -------------------------------------------------------

    async def acquire(self, trip_id, seat_codes, owner: Actor, session_id: Optional[str] = None) -> AcquireResult:
        """Lock every requested seat for ``owner`` or none of them."""
        trip_id = self._trip(trip_id)
        seats = self._seats(seat_codes)
        start = time.perf_counter()

        unknown = await self.inventory.unknown_seats(trip_id, seats)
        if unknown:
            self._record("acquire", "not_found", start)
            raise SeatNotFound(trip_id, unknown)

        outcome = await self._store_call(
            "acquire",
            self.store.acquire,
            trip_id,
            seats,
            owner,
            session_id,
            self.clock(),
            self.ttl,
            self.max_seats,
        )
        if outcome.status is StoreStatus.CONFLICT:
            self._record("acquire", "conflict", start)
            logger.info("Seat conflict on trip %s for %s: %s", trip_id, _describe(owner), outcome.seats)
            raise SeatsAlreadyLocked(outcome.seats)
        if outcome.status is StoreStatus.CEILING:
            self._record("acquire", "ceiling", start)
            raise MaxSeatsExceeded(self.max_seats, outcome.held_count, len(seats))

        self._record("acquire", "success", start)
        logger.info("Locked seats %s on trip %s for %s", outcome.seats, trip_id, _describe(owner))
        return AcquireResult(
            trip_id=trip_id,
            seats=sorted(outcome.seats),
            already_held=sorted(outcome.already_held),
            expires_at=outcome.expires_at,
        )

    async def extend(self, trip_id, seat_codes, owner: Actor, session_id: Optional[str] = None) -> ExtendResult:
        """Reset ``expires_at`` to ``now + ttl`` on seats the caller holds.

        The batch is all-or-nothing: one seat held by someone else fails the
        call with PermissionDenied, one expired seat with LockExpired.
        """
        trip_id = self._trip(trip_id)
        seats = self._seats(seat_codes)
        start = time.perf_counter()

        outcome = await self._store_call(
            "extend", self.store.extend, trip_id, seats, owner, session_id, self.clock(), self.ttl
        )
        if outcome.status is StoreStatus.DENIED:
            self._record("extend", "denied", start)
            raise PermissionDenied(outcome.seats)
        if outcome.status is StoreStatus.EXPIRED:
            self._record("extend", "expired", start)
            raise LockExpired(outcome.seats)

        self._record("extend", "success", start)
        return ExtendResult(trip_id=trip_id, seats=sorted(outcome.seats), expires_at=outcome.expires_at)

    async def release(self, trip_id, seat_codes, owner: Actor, session_id: Optional[str] = None) -> ReleaseResult:
        """Drop the caller's locks; seats it does not hold are skipped."""
        trip_id = self._trip(trip_id)
        seats = self._seats(seat_codes)
        start = time.perf_counter()
        released = await self._store_call(
            "release", self.store.release, trip_id, seats, owner, session_id, self.clock()
        )
        self._record("release", "success", start)
        return ReleaseResult(trip_id=trip_id, released_seats=sorted(released))

    async def admin_release(self, trip_id, seat_codes) -> ReleaseResult:
        """Release by seat code alone, for the booking service correcting inventory.

        Callers must be authorised before reaching this method.
        """
        trip_id = self._trip(trip_id)
        seats = self._seats(seat_codes)
        start = time.perf_counter()
        released = await self._store_call("admin_release", self.store.release, trip_id, seats, None, None, self.clock())
        self._record("admin_release", "success", start)
        logger.info("Service released seats %s on trip %s (%d were live)", seats, trip_id, len(released))
        return ReleaseResult(trip_id=trip_id, released_seats=sorted(released))

    async def release_all(self, trip_id, owner: Actor, session_id: Optional[str] = None) -> ReleaseResult:
        trip_id = self._trip(trip_id)
        start = time.perf_counter()
        now = self.clock()
        locks = await self._store_call("release_all", self.store.owner_locks, trip_id, owner, now)
        seats = [lock.seat_code for lock in locks if lock.owned_by(owner, session_id)]
        if not seats:
            self._record("release_all", "success", start)
            return ReleaseResult(trip_id=trip_id, released_seats=[])
        released = await self._store_call("release_all", self.store.release, trip_id, seats, owner, session_id, now)
        self._record("release_all", "success", start)
        logger.info("Released %d seat(s) on trip %s for %s", len(released), trip_id, _describe(owner))
        return ReleaseResult(trip_id=trip_id, released_seats=sorted(released))

    async def transfer(
        self,
        trip_id,
        guest: Actor,
        auth_owner: Actor,
        guest_session_id: Optional[str] = None,
        max_seats: Optional[int] = None,
    ) -> TransferResult:
        """Re-home a guest's live locks to the user who just logged in.

        Seats move one at a time in seat-code order, each in a single atomic
        store step, so a seat is never unowned or doubly owned. Once the user's
        ceiling is reached the remaining seats stay with the guest and are
        reported as rejected, as are seats lost to a racing acquire.
        """
        trip_id = self._trip(trip_id)
        if not guest.is_guest or auth_owner.is_guest:
            raise InvalidInput("Transfer moves guest locks to an authenticated user")
        ceiling = self.max_seats if max_seats is None else min(max_seats, self.max_seats)
        if ceiling < 0:
            raise InvalidInput("max_seats must not be negative")
        start = time.perf_counter()

        locks = await self._store_call("transfer", self.store.owner_locks, trip_id, guest, self.clock())
        seats = sorted(lock.seat_code for lock in locks if lock.owned_by(guest, guest_session_id))

        transferred: List[str] = []
        rejected: List[str] = []
        ceiling_reached = False
        for seat in seats:
            if ceiling_reached:
                rejected.append(seat)
                continue
            status = await self._store_call(
                "transfer",
                self.store.reassign,
                trip_id,
                seat,
                guest,
                guest_session_id,
                auth_owner,
                None,
                self.clock(),
                ceiling,
            )
            if status is ReassignStatus.MOVED:
                transferred.append(seat)
            else:
                rejected.append(seat)
                ceiling_reached = status is ReassignStatus.CEILING

        SEAT_LOCK_TRANSFERS.labels(outcome="transferred").inc(len(transferred))
        SEAT_LOCK_TRANSFERS.labels(outcome="rejected").inc(len(rejected))
        self._record("transfer", "success", start)
        if seats:
            logger.info(
                "Transferred %d guest lock(s) on trip %s to %s (%d rejected)",
                len(transferred),
                trip_id,
                _describe(auth_owner),
                len(rejected),
            )
        return TransferResult(trip_id=trip_id, transferred_seats=transferred, rejected_seats=rejected)

    async def query(self, trip_id, owner: Actor) -> List[SeatLock]:
        """Live locks held by ``owner`` on the trip, for restoring UI state."""
        trip_id = self._trip(trip_id)
        return await self._store_call("query", self.store.owner_locks, trip_id, owner, self.clock())

    async def trip_locks(self, trip_id) -> List[SeatLock]:
        trip_id = self._trip(trip_id)
        return await self._store_call("trip_locks", self.store.trip_locks, trip_id, self.clock())


def build_lock_store(config: Settings = settings, redis=None) -> LockStore:
    backend = config.LOCK_STORE_BACKEND
    if backend == "memory":
        return InMemoryLockStore()
    if backend == "sql":
        from seatlock.db.session import async_session
        from seatlock.services.sql_lock_store import SqlLockStore

        return SqlLockStore(async_session)

    from seatlock.services.redis_lock_store import RedisLockStore

    if redis is None:
        from seatlock.redis_client import redis_client as redis
    return RedisLockStore(redis)


def build_inventory(config: Settings = settings) -> SeatInventory:
    if config.SEAT_INVENTORY_URL:
        return HttpSeatInventory(config.SEAT_INVENTORY_URL, timeout=config.SEAT_INVENTORY_TIMEOUT_SECONDS)
    return OpenInventory()


_manager: Optional[SeatLockManager] = None


async def get_lock_manager() -> SeatLockManager:  # to be used as dependency
    global _manager
    if _manager is None:
        _manager = SeatLockManager.from_settings(build_lock_store(settings))
    return _manager
