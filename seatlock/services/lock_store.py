import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple, Type

from seatlock.services.types import (
    Actor,
    BatchOutcome,
    ReassignStatus,
    SeatLock,
    StoreStatus,
)

logger = logging.getLogger(__name__)


class LockStore(ABC):
    """Keyed storage of ``(trip_id, seat_code) -> SeatLock``.

    Every mutating method is atomic with respect to concurrent callers: the
    checks it performs and the writes it makes are indivisible. Records whose
    ``expires_at`` is not after ``now`` are treated as absent by every method.
    """

    # errors worth retrying; anything else propagates untouched
    transient_errors: Tuple[Type[BaseException], ...] = ()

    @abstractmethod
    async def acquire(
        self,
        trip_id: str,
        seat_codes: Sequence[str],
        owner: Actor,
        session_id: Optional[str],
        now: datetime,
        ttl: timedelta,
        max_seats: int,
    ) -> BatchOutcome:
        """Lock every seat or none.

        Returns CONFLICT with the seats live-held by other owners or by another
        session of the same owner, CEILING when the owner's live count plus the
        new seats exceeds ``max_seats``, or OK with the newly written seats and
        those the caller already held.
        """

    @abstractmethod
    async def extend(
        self,
        trip_id: str,
        seat_codes: Sequence[str],
        owner: Actor,
        session_id: Optional[str],
        now: datetime,
        ttl: timedelta,
    ) -> BatchOutcome:
        """Push ``expires_at`` to at least ``now + ttl`` for every seat or none.

        Returns DENIED with the seats live-held by someone else, EXPIRED with
        seats that have no live lock, or OK.
        """

    @abstractmethod
    async def release(
        self,
        trip_id: str,
        seat_codes: Sequence[str],
        owner: Optional[Actor],
        session_id: Optional[str],
        now: datetime,
    ) -> List[str]:
        """Delete the seats owned by ``owner`` and return those that were live.

        ``owner=None`` deletes regardless of ownership.
        """

    @abstractmethod
    async def reassign(
        self,
        trip_id: str,
        seat_code: str,
        source: Actor,
        source_session_id: Optional[str],
        target: Actor,
        target_session_id: Optional[str],
        now: datetime,
        max_seats: int,
    ) -> ReassignStatus:
        """Move one live lock from ``source`` to ``target`` in a single step."""

    @abstractmethod
    async def owner_locks(self, trip_id: str, owner: Actor, now: datetime) -> List[SeatLock]:
        pass

    @abstractmethod
    async def trip_locks(self, trip_id: str, now: datetime) -> List[SeatLock]:
        pass

    @abstractmethod
    async def purge_expired(self, now: datetime, limit: Optional[int] = None) -> int:
        """Delete expired records; returns how many were removed."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryLockStore(LockStore):
    """Dict-backed store guarded by an asyncio lock.

    Only safe inside a single process; used for local runs and tests.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], SeatLock] = {}
        self._mutex = asyncio.Lock()

    def _live(self, trip_id: str, seat_code: str, now: datetime) -> Optional[SeatLock]:
        rec = self._records.get((trip_id, seat_code))
        if rec is not None and rec.is_live(now):
            return rec
        return None

    def _live_count(self, trip_id: str, owner: Actor, now: datetime) -> int:
        return sum(
            1
            for (t, _), rec in self._records.items()
            if t == trip_id and rec.owner == owner and rec.is_live(now)
        )

    async def acquire(self, trip_id, seat_codes, owner, session_id, now, ttl, max_seats):
        async with self._mutex:
            conflicts, held, fresh = [], [], []
            for seat in seat_codes:
                rec = self._live(trip_id, seat, now)
                if rec is None:
                    fresh.append(seat)
                elif rec.owned_by(owner, session_id):
                    held.append(rec)
                else:
                    conflicts.append(seat)
            if conflicts:
                return BatchOutcome(StoreStatus.CONFLICT, seats=conflicts)

            count = self._live_count(trip_id, owner, now)
            if count + len(fresh) > max_seats:
                return BatchOutcome(StoreStatus.CEILING, held_count=count)

            expires_at = now + ttl
            for seat in fresh:
                self._records[(trip_id, seat)] = SeatLock(
                    trip_id=trip_id,
                    seat_code=seat,
                    owner=owner,
                    session_id=session_id,
                    locked_at=now,
                    expires_at=expires_at,
                )
            if not fresh:
                expires_at = min(rec.expires_at for rec in held)
            return BatchOutcome(
                StoreStatus.OK,
                seats=fresh,
                already_held=[rec.seat_code for rec in held],
                held_count=count + len(fresh),
                expires_at=expires_at,
            )

    async def extend(self, trip_id, seat_codes, owner, session_id, now, ttl):
        async with self._mutex:
            denied, expired, owned = [], [], []
            for seat in seat_codes:
                rec = self._live(trip_id, seat, now)
                if rec is None:
                    expired.append(seat)
                elif not rec.owned_by(owner, session_id):
                    denied.append(seat)
                else:
                    owned.append(rec)
            if denied:
                return BatchOutcome(StoreStatus.DENIED, seats=denied)
            if expired:
                return BatchOutcome(StoreStatus.EXPIRED, seats=expired)

            target = now + ttl
            new_expiries = []
            for rec in owned:
                expires_at = max(rec.expires_at, target)
                self._records[(trip_id, rec.seat_code)] = SeatLock(
                    trip_id=trip_id,
                    seat_code=rec.seat_code,
                    owner=rec.owner,
                    session_id=rec.session_id,
                    locked_at=rec.locked_at,
                    expires_at=expires_at,
                )
                new_expiries.append(expires_at)
            return BatchOutcome(
                StoreStatus.OK,
                seats=[rec.seat_code for rec in owned],
                expires_at=min(new_expiries),
            )

    async def release(self, trip_id, seat_codes, owner, session_id, now):
        async with self._mutex:
            released = []
            for seat in seat_codes:
                rec = self._records.get((trip_id, seat))
                if rec is None:
                    continue
                if owner is not None and not rec.owned_by(owner, session_id):
                    continue
                del self._records[(trip_id, seat)]
                if rec.is_live(now):
                    released.append(seat)
            return released

    async def reassign(self, trip_id, seat_code, source, source_session_id, target, target_session_id, now, max_seats):
        async with self._mutex:
            rec = self._live(trip_id, seat_code, now)
            if rec is None or not rec.owned_by(source, source_session_id):
                return ReassignStatus.LOST
            if self._live_count(trip_id, target, now) >= max_seats:
                return ReassignStatus.CEILING
            self._records[(trip_id, seat_code)] = rec.rehomed(target, target_session_id)
            return ReassignStatus.MOVED

    async def owner_locks(self, trip_id, owner, now):
        return sorted(
            (rec for (t, _), rec in self._records.items() if t == trip_id and rec.owner == owner and rec.is_live(now)),
            key=lambda rec: rec.seat_code,
        )

    async def trip_locks(self, trip_id, now):
        return sorted(
            (rec for (t, _), rec in self._records.items() if t == trip_id and rec.is_live(now)),
            key=lambda rec: rec.seat_code,
        )

    async def purge_expired(self, now, limit=None):
        async with self._mutex:
            stale = [key for key, rec in self._records.items() if not rec.is_live(now)]
            if limit is not None:
                stale = stale[:limit]
            for key in stale:
                del self._records[key]
            return len(stale)
