from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActorKind(str, Enum):
    GUEST = "guest"
    USER = "user"


@dataclass(frozen=True)
class Actor:
    """Identity that owns seat locks.

    Guests are identified by their session token, users by their user id. The
    two kinds never compare equal, even when the ids collide.
    """

    kind: ActorKind
    id: str

    @classmethod
    def guest(cls, session_id: str) -> "Actor":
        return cls(ActorKind.GUEST, session_id)

    @classmethod
    def user(cls, user_id) -> "Actor":
        return cls(ActorKind.USER, str(user_id))

    @property
    def is_guest(self) -> bool:
        return self.kind is ActorKind.GUEST

    @property
    def key(self) -> str:
        # storage key fragment only; never parsed back into an Actor
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class SeatLock:
    trip_id: str
    seat_code: str
    owner: Actor
    session_id: Optional[str]
    locked_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now

    def owned_by(self, owner: Actor, session_id: Optional[str] = None) -> bool:
        if self.owner != owner:
            return False
        if session_id and self.session_id:
            return self.session_id == session_id
        return True

    def rehomed(self, owner: Actor, session_id: Optional[str]) -> "SeatLock":
        return replace(self, owner=owner, session_id=session_id)


class StoreStatus(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    CEILING = "ceiling"
    DENIED = "denied"
    EXPIRED = "expired"


class ReassignStatus(str, Enum):
    MOVED = "moved"
    CEILING = "ceiling"
    LOST = "lost"


@dataclass
class BatchOutcome:
    """What a store reports back from an atomic batch write."""

    status: StoreStatus
    seats: List[str] = field(default_factory=list)
    already_held: List[str] = field(default_factory=list)
    held_count: int = 0
    expires_at: Optional[datetime] = None


@dataclass
class AcquireResult:
    trip_id: str
    seats: List[str]
    already_held: List[str]
    expires_at: Optional[datetime]


@dataclass
class ExtendResult:
    trip_id: str
    seats: List[str]
    expires_at: datetime


@dataclass
class ReleaseResult:
    trip_id: str
    released_seats: List[str]

    @property
    def count(self) -> int:
        return len(self.released_seats)


@dataclass
class TransferResult:
    trip_id: str
    transferred_seats: List[str]
    rejected_seats: List[str]
