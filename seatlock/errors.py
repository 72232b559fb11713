from typing import Iterable, List, Optional


class SeatLockError(Exception):
    """Base class for seat lock failures surfaced to callers.

    Every subclass carries the HTTP status and error code the boundary uses,
    plus the seats that caused the failure when that is meaningful.
    """

    status_code: int = 400
    code: str = "SEAT_LOCK_ERROR"

    def __init__(self, message: str, seats: Optional[Iterable[str]] = None) -> None:
        self.message = message
        self.seats: List[str] = sorted(seats) if seats else []
        super().__init__(message)


class SeatsAlreadyLocked(SeatLockError):
    status_code = 409
    code = "SEATS_LOCKED"

    def __init__(self, seats: Iterable[str]) -> None:
        seats = sorted(seats)
        super().__init__(f"Seats already locked: {', '.join(seats)}", seats)


class LockExpired(SeatLockError):
    status_code = 409
    code = "LOCK_EXPIRED"

    def __init__(self, seats: Iterable[str]) -> None:
        seats = sorted(seats)
        super().__init__(f"Locks expired or missing for seats: {', '.join(seats)}; re-acquire them", seats)


class PermissionDenied(SeatLockError):
    status_code = 403
    code = "LOCK_PERMISSION_DENIED"

    def __init__(self, seats: Iterable[str]) -> None:
        seats = sorted(seats)
        super().__init__(f"Cannot modify locks for seats: {', '.join(seats)}", seats)


class MaxSeatsExceeded(SeatLockError):
    status_code = 409
    code = "MAX_SEATS_EXCEEDED"

    def __init__(self, max_seats: int, held: int, requested: int) -> None:
        self.max_seats = max_seats
        self.held = held
        self.requested = requested
        super().__init__(
            f"Cannot lock {requested} more seat(s): would exceed maximum {max_seats} seats "
            f"per trip ({held} already held)"
        )


class InvalidInput(SeatLockError):
    status_code = 422
    code = "VAL_001"


class SeatNotFound(SeatLockError):
    status_code = 404
    code = "SEAT_NOT_FOUND"

    def __init__(self, trip_id: str, seats: Iterable[str] = ()) -> None:
        seats = sorted(seats)
        if seats:
            message = f"Unknown seats on trip {trip_id}: {', '.join(seats)}"
        else:
            message = f"Trip {trip_id} not found"
        super().__init__(message, seats)


class LockStoreUnavailable(SeatLockError):
    status_code = 503
    code = "SYS_STORE_UNAVAILABLE"
