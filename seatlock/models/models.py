from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint

from seatlock.db.base import Base


class SeatLockRecord(Base):
    __tablename__ = "seat_locks"
    id = Column(Integer, primary_key=True)
    trip_id = Column(String(64), nullable=False)
    seat_code = Column(String(32), nullable=False)
    owner_kind = Column(String(16), nullable=False)
    owner_id = Column(String(128), nullable=False)
    session_id = Column(String(128), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # the unique pair is what makes a racing insert fail instead of double-locking
    __table_args__ = (
        UniqueConstraint("trip_id", "seat_code", name="uq_seat_lock_trip_seat"),
        Index("ix_seat_lock_trip_owner", "trip_id", "owner_kind", "owner_id"),
    )
