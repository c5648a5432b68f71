from datetime import date as date_type
from datetime import datetime, time
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from .entity import Booking, BookingStatus
from .errors import MissingField
from .membership import MembershipState
from .rooms import Room


class RoomRead(BaseModel):
    """
    Schema returned when reading room information.
    """
    id: str
    name: str
    capacity: int
    location: str
    tags: List[str]

    @classmethod
    def from_room(cls, room: Room) -> "RoomRead":
        return cls(id=room.id, name=room.name, capacity=room.capacity, location=room.location, tags=list(room.tags))


class BookingCreate(BaseModel):
    """
    Schema for creating a new booking.

    The time window is given either as ``start_time``/``end_time`` or as a
    calendar ``date`` with ``start``/``end`` wall-clock times (``HH:MM``).
    Missing values are reported by the booking core as MissingField.
    """
    room_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    date: Optional[date_type] = None
    start: Optional[time] = None
    end: Optional[time] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    def resolve_window(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        if self.start_time is not None or self.end_time is not None:
            return self.start_time, self.end_time
        if self.date is None and self.start is None and self.end is None:
            return None, None
        if self.date is None or self.start is None or self.end is None:
            raise MissingField("date, start and end are required together")
        return datetime.combine(self.date, self.start), datetime.combine(self.date, self.end)


class BookingRead(BaseModel):
    """
    Schema returned when reading booking information.

    ``participant_count`` includes the owner; ``participants`` does not.
    """
    id: str
    room_id: str
    room_name: str
    capacity: int
    owner_id: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    state: MembershipState
    participants: List[str]
    participant_count: int
    notes: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking, room: Room, state: MembershipState) -> "BookingRead":
        return cls(
            id=booking.id,
            room_id=booking.room_id,
            room_name=room.name,
            capacity=room.capacity,
            owner_id=booking.owner_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status=booking.status,
            state=state,
            participants=list(booking.participants),
            participant_count=booking.attendee_count,
            notes=booking.notes,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class AvailabilityRead(BaseModel):
    room_id: str
    start_time: datetime
    end_time: datetime
    available: bool
    conflicting_booking_ids: List[str] = []
