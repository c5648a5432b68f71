"""
The booking value and the rules every stored booking must satisfy.

A booking is owned by one user, who always counts as attending and is
therefore never stored in ``participants``. Times are local wall-clock
values; timezone information supplied by callers is dropped.
"""
import uuid
from datetime import datetime, timedelta
from enum import Enum as PyEnum
from typing import NewType, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import DurationExceeded, InvalidTimeRange, MissingField, UnknownRoom
from .rooms import RoomCatalog

UserId = NewType("UserId", str)


class BookingStatus(str, PyEnum):
    """
    Enumeration of booking statuses.

    Values
    ------
    active
        Booking holds the room and accepts participants.
    cancelled
        Booking was cancelled by its owner; it no longer blocks the room.
    """
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Booking(BaseModel):
    """
    Immutable snapshot of a booking as read from the repository.

    Attributes
    ----------
    id : str
        Unique identifier assigned at creation.
    room_id : str
        Room catalog key.
    owner_id : str
        User who created the booking.
    start_time, end_time : datetime
        Half-open interval ``[start_time, end_time)``.
    participants : Tuple[str, ...]
        Non-owner users in join order, without duplicates.
    status : BookingStatus
        Active or cancelled.
    notes : str
        Free-form text.
    version : int
        Incremented on every write; used for conditional updates.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    owner_id: str
    start_time: datetime
    end_time: datetime
    participants: Tuple[str, ...] = ()
    status: BookingStatus = BookingStatus.ACTIVE
    notes: str = ""
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.ACTIVE

    @property
    def attendee_count(self) -> int:
        """Participants plus the implicit owner."""
        return len(self.participants) + 1

    def is_attended_by(self, user_id: str) -> bool:
        return user_id == self.owner_id or user_id in self.participants


def new_booking_id() -> str:
    return uuid.uuid4().hex


def wall_clock(value: datetime) -> datetime:
    """Drop tzinfo, keeping the wall-clock reading the caller supplied."""
    if value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


def ensure_time_valid(start_time: datetime, end_time: datetime, max_duration: Optional[timedelta] = None):
    """
    Validate that a booking time range is well-formed.

    Raises
    ------
    InvalidTimeRange
        If end_time is not strictly after start_time.
    DurationExceeded
        If the range is longer than max_duration.
    """
    if end_time <= start_time:
        raise InvalidTimeRange()
    if max_duration is not None and end_time - start_time > max_duration:
        hours = max_duration.total_seconds() / 3600
        raise DurationExceeded(f"Booking duration exceeds {hours:g} hours")


def make_booking(
    owner_id: Optional[str],
    room_id: Optional[str],
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    notes: Optional[str] = None,
    *,
    catalog: RoomCatalog,
    max_duration: Optional[timedelta] = None,
) -> Booking:
    """
    Build a new active booking after checking its invariants.

    Nothing is persisted; storing the result is the repository's job.

    Raises
    ------
    MissingField
        If owner, room, start or end is absent.
    InvalidTimeRange, DurationExceeded
        If the time range is malformed or too long.
    UnknownRoom
        If room_id is not in the catalog.
    """
    missing = [
        name
        for name, value in (
            ("owner_id", owner_id),
            ("room_id", room_id),
            ("start_time", start_time),
            ("end_time", end_time),
        )
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        raise MissingField(f"Missing required fields: {', '.join(missing)}")

    start_time = wall_clock(start_time)
    end_time = wall_clock(end_time)
    ensure_time_valid(start_time, end_time, max_duration)

    if room_id not in catalog:
        raise UnknownRoom(f"Unknown room: {room_id}")

    now = datetime.now()
    return Booking(
        id=new_booking_id(),
        room_id=room_id,
        owner_id=str(owner_id),
        start_time=start_time,
        end_time=end_time,
        participants=(),
        status=BookingStatus.ACTIVE,
        notes=notes or "",
        version=0,
        created_at=now,
        updated_at=now,
    )
