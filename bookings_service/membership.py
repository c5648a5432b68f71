"""
Participant membership rules for a single booking.

Each function inspects one booking snapshot and either raises the reason the
transition is illegal or returns the field changes to write back. None of
them touch storage.
"""
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from .entity import Booking, BookingStatus
from .errors import (
    AlreadyJoined,
    BookingCancelled,
    Forbidden,
    NotAParticipant,
    OwnerCannotJoinOwnBooking,
    OwnerCannotLeave,
    RoomFull,
)


class MembershipState(str, PyEnum):
    ACTIVE_EMPTY = "active-empty"
    ACTIVE_JOINED = "active-joined"
    ACTIVE_FULL = "active-full"
    CANCELLED = "cancelled"


def membership_state(booking: Booking, capacity: int) -> MembershipState:
    """
    Classify a booking; the owner counts towards capacity.

    A room with capacity 1 is full as soon as it is booked.
    """
    if booking.status == BookingStatus.CANCELLED:
        return MembershipState.CANCELLED
    if booking.attendee_count >= capacity:
        return MembershipState.ACTIVE_FULL
    if booking.participants:
        return MembershipState.ACTIVE_JOINED
    return MembershipState.ACTIVE_EMPTY


def join_changes(booking: Booking, user_id: str, capacity: int) -> Dict[str, Any]:
    if not booking.is_active:
        raise BookingCancelled()
    if user_id == booking.owner_id:
        raise OwnerCannotJoinOwnBooking()
    if user_id in booking.participants:
        raise AlreadyJoined()
    if booking.attendee_count >= capacity:
        raise RoomFull(f"Room capacity of {capacity} reached for this booking")
    return {"participants": booking.participants + (user_id,)}


def leave_changes(booking: Booking, user_id: str) -> Dict[str, Any]:
    if not booking.is_active:
        raise BookingCancelled()
    if user_id == booking.owner_id:
        raise OwnerCannotLeave()
    if user_id not in booking.participants:
        raise NotAParticipant()
    return {"participants": tuple(p for p in booking.participants if p != user_id)}


def ensure_owner(booking: Booking, acting_user_id: str, action: str) -> None:
    if acting_user_id != booking.owner_id:
        raise Forbidden(f"Only the booking owner can {action} it")


def cancel_changes(booking: Booking, acting_user_id: str) -> Optional[Dict[str, Any]]:
    """
    Changes for cancelling; participants are kept so past attendance stays visible.

    Returns None when the booking is already cancelled (nothing to write).
    """
    ensure_owner(booking, acting_user_id, "cancel")
    if booking.status == BookingStatus.CANCELLED:
        return None
    return {"status": BookingStatus.CANCELLED}


def ensure_can_delete(booking: Booking, acting_user_id: str) -> None:
    # Owners may delete even with participants; informing them is out of band
    ensure_owner(booking, acting_user_id, "delete")
