from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from seatlock.services.types import SeatLock


class SeatCodesRequest(BaseModel):
    seat_codes: List[str] = Field(..., description="Seat codes on the trip, e.g. ['1A', '1B']")


class LockSeatsRequest(SeatCodesRequest):
    session_id: Optional[str] = Field(None, description="Checkout session; defaults to the guest session for guests")


class ExtendLocksRequest(LockSeatsRequest):
    pass


class ReleaseLocksRequest(LockSeatsRequest):
    pass


class ReleaseAllRequest(BaseModel):
    session_id: Optional[str] = None


class TransferLocksRequest(BaseModel):
    guest_session_id: str = Field(..., description="Guest session token the locks were taken under")
    max_seats: Optional[int] = Field(None, ge=0)


class LockSeatsResponse(BaseModel):
    trip_id: str
    seats: List[str]
    already_held: List[str]
    expires_at: Optional[datetime]
    ttl_seconds: int


class ExtendLocksResponse(BaseModel):
    trip_id: str
    seats: List[str]
    expires_at: datetime
    ttl_seconds: int


class ReleaseLocksResponse(BaseModel):
    trip_id: str
    released_seats: List[str]
    count: int


class TransferLocksResponse(BaseModel):
    trip_id: str
    transferred_seats: List[str]
    rejected_seats: List[str]


class SeatLockOut(BaseModel):
    seat_code: str
    locked_at: datetime
    expires_at: datetime
    remaining_seconds: int

    @classmethod
    def from_lock(cls, lock: SeatLock, now: datetime) -> "SeatLockOut":
        return cls(
            seat_code=lock.seat_code,
            locked_at=lock.locked_at,
            expires_at=lock.expires_at,
            remaining_seconds=max(0, int((lock.expires_at - now).total_seconds())),
        )


class MyLocksResponse(BaseModel):
    trip_id: str
    locks: List[SeatLockOut]


class TripLocksResponse(BaseModel):
    trip_id: str
    locked_seats: List[str]
    count: int
