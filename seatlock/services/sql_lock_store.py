import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from seatlock.models.models import SeatLockRecord
from seatlock.services.lock_store import LockStore
from seatlock.services.types import (
    Actor,
    ActorKind,
    BatchOutcome,
    ReassignStatus,
    SeatLock,
    StoreStatus,
)

logger = logging.getLogger(__name__)


def _aware(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _to_lock(row: SeatLockRecord) -> SeatLock:
    return SeatLock(
        trip_id=row.trip_id,
        seat_code=row.seat_code,
        owner=Actor(ActorKind(row.owner_kind), row.owner_id),
        session_id=row.session_id,
        locked_at=_aware(row.locked_at),
        expires_at=_aware(row.expires_at),
    )


class SqlLockStore(LockStore):
    """Lock records in the ``seat_locks`` table.

    Each batch runs in one transaction. Existing seat rows are read with
    ``SELECT ... FOR UPDATE`` and new rows rely on the unique
    ``(trip_id, seat_code)`` constraint, so a racing insert aborts the whole
    batch rather than leaving a partial grant behind.
    """

    transient_errors = (OperationalError,)

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _seat_rows(session, trip_id: str, seat_codes: Sequence[str]) -> Dict[str, SeatLockRecord]:
        stmt = (
            sa_select(SeatLockRecord)
            .where(SeatLockRecord.trip_id == trip_id)
            .where(SeatLockRecord.seat_code.in_(list(seat_codes)))
            .with_for_update()
        )
        res = await session.execute(stmt)
        return {row.seat_code: row for row in res.scalars().all()}

    @staticmethod
    async def _live_count(session, trip_id: str, owner: Actor, now: datetime) -> int:
        # row locks serialise concurrent acquires by an owner who already holds seats
        stmt = (
            sa_select(SeatLockRecord.id)
            .where(SeatLockRecord.trip_id == trip_id)
            .where(SeatLockRecord.owner_kind == owner.kind.value)
            .where(SeatLockRecord.owner_id == owner.id)
            .where(SeatLockRecord.expires_at > now)
            .with_for_update()
        )
        res = await session.execute(stmt)
        return len(res.scalars().all())

    async def acquire(self, trip_id, seat_codes, owner, session_id, now, ttl, max_seats):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    rows = await self._seat_rows(session, trip_id, seat_codes)
                    conflicts, held, fresh = [], [], []
                    for seat in seat_codes:
                        row = rows.get(seat)
                        if row is None or _aware(row.expires_at) <= now:
                            fresh.append(seat)
                        elif _to_lock(row).owned_by(owner, session_id):
                            held.append(row)
                        else:
                            conflicts.append(seat)
                    if conflicts:
                        return BatchOutcome(StoreStatus.CONFLICT, seats=conflicts)

                    count = await self._live_count(session, trip_id, owner, now)
                    if count + len(fresh) > max_seats:
                        return BatchOutcome(StoreStatus.CEILING, held_count=count)

                    expires_at = now + ttl
                    for seat in fresh:
                        row = rows.get(seat)
                        if row is None:
                            row = SeatLockRecord(trip_id=trip_id, seat_code=seat)
                            session.add(row)
                        # an expired row is overwritten in place
                        row.owner_kind = owner.kind.value
                        row.owner_id = owner.id
                        row.session_id = session_id
                        row.locked_at = now
                        row.expires_at = expires_at
                    if not fresh:
                        expires_at = min(_aware(row.expires_at) for row in held)
                    outcome = BatchOutcome(
                        StoreStatus.OK,
                        seats=fresh,
                        already_held=[row.seat_code for row in held],
                        held_count=count + len(fresh),
                        expires_at=expires_at,
                    )
            return outcome
        except IntegrityError:
            logger.info("Concurrent insert won seats on trip %s: %s", trip_id, seat_codes)
            taken = [
                lock.seat_code
                for lock in await self.trip_locks(trip_id, now)
                if lock.seat_code in seat_codes and not lock.owned_by(owner, session_id)
            ]
            return BatchOutcome(StoreStatus.CONFLICT, seats=taken or list(seat_codes))

    async def extend(self, trip_id, seat_codes, owner, session_id, now, ttl):
        async with self._session_factory() as session:
            async with session.begin():
                rows = await self._seat_rows(session, trip_id, seat_codes)
                denied, expired, owned = [], [], []
                for seat in seat_codes:
                    row = rows.get(seat)
                    lock = _to_lock(row) if row is not None else None
                    if lock is None or not lock.is_live(now):
                        expired.append(seat)
                    elif not lock.owned_by(owner, session_id):
                        denied.append(seat)
                    else:
                        owned.append(row)
                if denied:
                    return BatchOutcome(StoreStatus.DENIED, seats=denied)
                if expired:
                    return BatchOutcome(StoreStatus.EXPIRED, seats=expired)

                target = now + ttl
                for row in owned:
                    row.expires_at = max(_aware(row.expires_at), target)
                return BatchOutcome(
                    StoreStatus.OK,
                    seats=[row.seat_code for row in owned],
                    expires_at=min(_aware(row.expires_at) for row in owned),
                )

    async def release(self, trip_id, seat_codes, owner, session_id, now):
        released = []
        async with self._session_factory() as session:
            async with session.begin():
                rows = await self._seat_rows(session, trip_id, seat_codes)
                for seat in seat_codes:
                    row = rows.get(seat)
                    if row is None:
                        continue
                    lock = _to_lock(row)
                    if owner is not None and not lock.owned_by(owner, session_id):
                        continue
                    await session.delete(row)
                    if lock.is_live(now):
                        released.append(seat)
        return released

    async def reassign(self, trip_id, seat_code, source, source_session_id, target, target_session_id, now, max_seats):
        async with self._session_factory() as session:
            async with session.begin():
                row = (await self._seat_rows(session, trip_id, [seat_code])).get(seat_code)
                if row is None:
                    return ReassignStatus.LOST
                lock = _to_lock(row)
                if not lock.is_live(now) or not lock.owned_by(source, source_session_id):
                    return ReassignStatus.LOST
                if await self._live_count(session, trip_id, target, now) >= max_seats:
                    return ReassignStatus.CEILING
                row.owner_kind = target.kind.value
                row.owner_id = target.id
                row.session_id = target_session_id
                return ReassignStatus.MOVED

    async def owner_locks(self, trip_id, owner, now):
        stmt = (
            sa_select(SeatLockRecord)
            .where(SeatLockRecord.trip_id == trip_id)
            .where(SeatLockRecord.owner_kind == owner.kind.value)
            .where(SeatLockRecord.owner_id == owner.id)
            .where(SeatLockRecord.expires_at > now)
            .order_by(SeatLockRecord.seat_code)
        )
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            return [_to_lock(row) for row in res.scalars().all()]

    async def trip_locks(self, trip_id, now):
        stmt = (
            sa_select(SeatLockRecord)
            .where(SeatLockRecord.trip_id == trip_id)
            .where(SeatLockRecord.expires_at > now)
            .order_by(SeatLockRecord.seat_code)
        )
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            return [_to_lock(row) for row in res.scalars().all()]

    async def purge_expired(self, now, limit: Optional[int] = None) -> int:
        stale = sa_select(SeatLockRecord.id).where(SeatLockRecord.expires_at <= now)
        if limit is not None:
            stale = stale.limit(limit)
        async with self._session_factory() as session:
            async with session.begin():
                ids: List[int] = list((await session.execute(stale)).scalars().all())
                if not ids:
                    return 0
                # re-check expiry so a row re-acquired since the select survives
                res = await session.execute(
                    sa_delete(SeatLockRecord)
                    .where(SeatLockRecord.id.in_(ids))
                    .where(SeatLockRecord.expires_at <= now)
                )
                return res.rowcount

    async def ping(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
