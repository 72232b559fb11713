from typing import Optional

from fastapi import APIRouter, Depends, status

from seatlock.auth.deps import get_actor, get_authenticated_actor, require_service_caller
from seatlock.errors import InvalidInput
from seatlock.schemas.seat_lock import (
    ExtendLocksRequest,
    ExtendLocksResponse,
    LockSeatsRequest,
    LockSeatsResponse,
    MyLocksResponse,
    ReleaseAllRequest,
    ReleaseLocksRequest,
    ReleaseLocksResponse,
    SeatCodesRequest,
    SeatLockOut,
    TransferLocksRequest,
    TransferLocksResponse,
    TripLocksResponse,
)
from seatlock.services.identity import identity_resolver
from seatlock.services.seat_lock import SeatLockManager, get_lock_manager
from seatlock.services.types import Actor

router = APIRouter()


def _session(actor: Actor, session_id: Optional[str]) -> Optional[str]:
    # guests are their session; users may scope locks to a checkout session
    if session_id:
        return session_id
    return actor.id if actor.is_guest else None


@router.post("/{trip_id}/seats/lock", response_model=LockSeatsResponse, status_code=status.HTTP_201_CREATED)
async def lock_seats(
    trip_id: str,
    req: LockSeatsRequest,
    actor: Actor = Depends(get_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    """Lock all requested seats for the caller, or none of them."""
    res = await manager.acquire(trip_id, req.seat_codes, actor, _session(actor, req.session_id))
    return LockSeatsResponse(
        trip_id=res.trip_id,
        seats=res.seats,
        already_held=res.already_held,
        expires_at=res.expires_at,
        ttl_seconds=int(manager.ttl.total_seconds()),
    )


@router.post("/{trip_id}/seats/extend", response_model=ExtendLocksResponse)
async def extend_locks(
    trip_id: str,
    req: ExtendLocksRequest,
    actor: Actor = Depends(get_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    res = await manager.extend(trip_id, req.seat_codes, actor, _session(actor, req.session_id))
    return ExtendLocksResponse(
        trip_id=res.trip_id,
        seats=res.seats,
        expires_at=res.expires_at,
        ttl_seconds=int(manager.ttl.total_seconds()),
    )


@router.post("/{trip_id}/seats/release", response_model=ReleaseLocksResponse)
async def release_locks(
    trip_id: str,
    req: ReleaseLocksRequest,
    actor: Actor = Depends(get_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    res = await manager.release(trip_id, req.seat_codes, actor, _session(actor, req.session_id))
    return ReleaseLocksResponse(trip_id=res.trip_id, released_seats=res.released_seats, count=res.count)


@router.post("/{trip_id}/seats/release-all", response_model=ReleaseLocksResponse)
async def release_all_locks(
    trip_id: str,
    req: Optional[ReleaseAllRequest] = None,
    actor: Actor = Depends(get_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    session_id = req.session_id if req else None
    res = await manager.release_all(trip_id, actor, _session(actor, session_id))
    return ReleaseLocksResponse(trip_id=res.trip_id, released_seats=res.released_seats, count=res.count)


@router.post("/{trip_id}/seats/transfer-guest-locks", response_model=TransferLocksResponse)
async def transfer_guest_locks(
    trip_id: str,
    req: TransferLocksRequest,
    actor: Actor = Depends(get_authenticated_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    """Move a guest's seats to the user who just logged in."""
    guest = identity_resolver.guest(req.guest_session_id)
    if guest is None:
        raise InvalidInput("Invalid guest session id")
    res = await manager.transfer(
        trip_id,
        guest,
        actor,
        guest_session_id=req.guest_session_id,
        max_seats=req.max_seats,
    )
    return TransferLocksResponse(
        trip_id=res.trip_id,
        transferred_seats=res.transferred_seats,
        rejected_seats=res.rejected_seats,
    )


@router.get("/{trip_id}/seats/my-locks", response_model=MyLocksResponse)
async def my_locks(
    trip_id: str,
    actor: Actor = Depends(get_actor),
    manager: SeatLockManager = Depends(get_lock_manager),
):
    locks = await manager.query(trip_id, actor)
    now = manager.clock()
    return MyLocksResponse(trip_id=trip_id, locks=[SeatLockOut.from_lock(lock, now) for lock in locks])


@router.get("/{trip_id}/seats/locks", response_model=TripLocksResponse)
async def trip_locks(trip_id: str, manager: SeatLockManager = Depends(get_lock_manager)):
    """Seats currently held on the trip, for greying out the seat map. Owners are not exposed."""
    locks = await manager.trip_locks(trip_id)
    seats = [lock.seat_code for lock in locks]
    return TripLocksResponse(trip_id=trip_id, locked_seats=seats, count=len(seats))


@router.post(
    "/{trip_id}/seats/service-release",
    response_model=ReleaseLocksResponse,
    dependencies=[Depends(require_service_caller)],
)
async def service_release(
    trip_id: str,
    req: SeatCodesRequest,
    manager: SeatLockManager = Depends(get_lock_manager),
):
    res = await manager.admin_release(trip_id, req.seat_codes)
    return ReleaseLocksResponse(trip_id=res.trip_id, released_seats=res.released_seats, count=res.count)
