"""
Overlap detection between a proposed time window and existing bookings.
"""
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional

from .entity import Booking

ROOM_SCOPE = "room"
USER_SCOPE = "user"


class ScopeKey(NamedTuple):
    """
    The dimension across which overlapping bookings are disallowed.

    ``kind`` is 'room' (two bookings in the same physical room) or 'user'
    (one owner booked in two places at once); ``value`` is the room or user id.
    """
    kind: str
    value: str

    @classmethod
    def room(cls, room_id: str) -> "ScopeKey":
        return cls(ROOM_SCOPE, room_id)

    @classmethod
    def user(cls, user_id: str) -> "ScopeKey":
        return cls(USER_SCOPE, user_id)

    def matches(self, booking: Booking) -> bool:
        if self.kind == ROOM_SCOPE:
            return booking.room_id == self.value
        if self.kind == USER_SCOPE:
            return booking.owner_id == self.value
        return False

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}"


def scope_keys_for(room_id: str, owner_id: str, kinds: Iterable[str]) -> List[ScopeKey]:
    keys = []
    for kind in kinds:
        if kind == ROOM_SCOPE:
            keys.append(ScopeKey.room(room_id))
        elif kind == USER_SCOPE:
            keys.append(ScopeKey.user(owner_id))
    return keys


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """
    Half-open overlap test: ``[s1, e1)`` and ``[s2, e2)`` share an instant.

    A booking ending exactly when another starts does not overlap it.
    """
    return max(s1, s2) < min(e1, e2)


def find_conflicts(
    existing: Iterable[Booking],
    scope_key: ScopeKey,
    proposed_start: datetime,
    proposed_end: datetime,
    exclude_id: Optional[str] = None,
) -> List[Booking]:
    """
    Return the active bookings in ``scope_key`` that overlap the proposed window.

    Parameters
    ----------
    existing : Iterable[Booking]
        Candidate bookings; those outside the scope are ignored.
    scope_key : ScopeKey
        Room or user scope to check within.
    proposed_start, proposed_end : datetime
        The window being validated.
    exclude_id : Optional[str]
        Booking to leave out, e.g. the booking being re-validated.
    """
    return [
        booking
        for booking in existing
        if booking.is_active
        and booking.id != exclude_id
        and scope_key.matches(booking)
        and intervals_overlap(booking.start_time, booking.end_time, proposed_start, proposed_end)
    ]


def has_conflict(
    existing: Iterable[Booking],
    scope_key: ScopeKey,
    proposed_start: datetime,
    proposed_end: datetime,
    exclude_id: Optional[str] = None,
) -> bool:
    return bool(find_conflicts(existing, scope_key, proposed_start, proposed_end, exclude_id))
