from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String

from .database import Base
from .entity import Booking, BookingStatus


class BookingRecord(Base):
    """
    SQLAlchemy model representing a room booking.

    Attributes
    ----------
    id : str
        Primary key (uuid4 hex).
    room_id : str
        Identifier of the booked room in the room catalog.
    owner_id : str
        Identifier of the user who created the booking.
    start_time : datetime
        Start of the reserved time interval.
    end_time : datetime
        End of the reserved time interval.
    participants : list
        Ids of users who joined, in join order; never includes the owner.
    status : BookingStatus
        Current status of the booking (active/cancelled).
    notes : str
        Free-form text supplied by the owner.
    version : int
        Optimistic-concurrency counter bumped on every update.
    created_at : datetime
        Timestamp when the booking was created.
    updated_at : datetime
        Timestamp of the last update.
    """
    __tablename__ = "bookings"

    id = Column(String(32), primary_key=True, index=True)
    room_id = Column(String(64), index=True, nullable=False)
    owner_id = Column(String(64), index=True, nullable=False)
    start_time = Column(DateTime, index=True, nullable=False)
    end_time = Column(DateTime, nullable=False)
    participants = Column(JSON, nullable=False, default=list)
    status = Column(Enum(BookingStatus), index=True, nullable=False, default=BookingStatus.ACTIVE)
    notes = Column(String(500), nullable=False, default="")
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)

    def to_entity(self) -> Booking:
        return Booking(
            id=self.id,
            room_id=self.room_id,
            owner_id=self.owner_id,
            start_time=self.start_time,
            end_time=self.end_time,
            participants=tuple(self.participants or ()),
            status=self.status,
            notes=self.notes or "",
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, booking: Booking) -> "BookingRecord":
        return cls(
            id=booking.id,
            room_id=booking.room_id,
            owner_id=booking.owner_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            participants=list(booking.participants),
            status=booking.status,
            notes=booking.notes,
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class ScopeLock(Base):
    """
    One row per conflict scope ('room:r1', 'user:42').

    Creating a booking locks the rows of its scopes with SELECT ... FOR UPDATE
    so concurrent creates in the same scope run one after the other.
    """
    __tablename__ = "booking_scope_locks"

    scope_key = Column(String(100), primary_key=True)
