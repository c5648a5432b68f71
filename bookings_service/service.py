from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .conflicts import ROOM_SCOPE, USER_SCOPE, ScopeKey, find_conflicts, scope_keys_for
from .entity import Booking, ensure_time_valid, make_booking, wall_clock
from .errors import ConflictFailed, TimeSlotConflict, UnknownRoom
from .membership import (
    MembershipState,
    cancel_changes,
    ensure_can_delete,
    join_changes,
    leave_changes,
    membership_state,
)
from .repository import BookingRepository
from .rooms import Room, RoomCatalog

# Computes the changes for one snapshot, or None when nothing needs writing
Transition = Callable[[Booking], Optional[Dict[str, Any]]]

CONFLICT_MESSAGES = {
    ROOM_SCOPE: "Room is already booked for this time range",
    USER_SCOPE: "Time slot already booked for this user",
}


class BookingService:
    """
    Booking operations over an injected repository and room catalog.

    Each write reads a snapshot, validates it with the entity, conflict and
    membership rules, then writes back conditionally on the snapshot's
    version. A lost race (ConflictFailed) is retried once against a fresh
    snapshot; a second loss is reported to the caller.

    Parameters
    ----------
    repository : BookingRepository
        Storage for bookings.
    catalog : RoomCatalog
        Static room data (capacity, name).
    max_duration : Optional[timedelta]
        Longest allowed booking, or None for no limit.
    conflict_scopes : Sequence[str]
        Scope kinds to enforce on create; 'room' is always enforced.
    """

    def __init__(
        self,
        repository: BookingRepository,
        catalog: RoomCatalog,
        max_duration: Optional[timedelta] = timedelta(hours=4),
        conflict_scopes: Sequence[str] = (ROOM_SCOPE,),
    ):
        self.repository = repository
        self.catalog = catalog
        self.max_duration = max_duration
        self.conflict_scopes = tuple(dict.fromkeys((ROOM_SCOPE, *conflict_scopes)))

    # ---------- Create ----------

    def create_booking(
        self,
        owner_id: str,
        room_id: str,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Validate and store a new active booking owned by ``owner_id``.

        Raises
        ------
        MissingField, InvalidTimeRange, DurationExceeded, UnknownRoom
            If the booking itself is invalid (nothing is written).
        TimeSlotConflict
            If it overlaps an active booking in an enforced scope.
        """
        booking = make_booking(
            owner_id,
            room_id,
            start_time,
            end_time,
            notes,
            catalog=self.catalog,
            max_duration=self.max_duration,
        )
        scope_keys = scope_keys_for(booking.room_id, booking.owner_id, self.conflict_scopes)

        def guard(existing: List[Booking]) -> None:
            for key in scope_keys:
                if find_conflicts(existing, key, booking.start_time, booking.end_time, exclude_id=booking.id):
                    raise TimeSlotConflict(CONFLICT_MESSAGES[key.kind])

        try:
            return self.repository.create(booking, scope_keys, guard)
        except ConflictFailed:
            return self.repository.create(booking, scope_keys, guard)

    # ---------- Reads ----------

    def get_booking(self, booking_id: str) -> Booking:
        return self.repository.find(booking_id)

    def list_bookings(self, scope_key: ScopeKey, active_only: bool = False) -> List[Booking]:
        return self.repository.find_by_scope(scope_key, active_only=active_only)

    def list_mine(self, user_id: str) -> List[Booking]:
        """Bookings the user owns or has joined, ordered by start time."""
        owned = self.repository.find_by_scope(ScopeKey.user(user_id), active_only=False)
        joined = self.repository.find_by_participant(user_id)
        merged = {b.id: b for b in [*owned, *joined]}
        return sorted(merged.values(), key=lambda b: (b.start_time, b.id))

    def check_availability(self, room_id: str, start_time: datetime, end_time: datetime) -> List[Booking]:
        """
        Return the active bookings blocking ``room_id`` in the window (empty if free).
        """
        start_time, end_time = wall_clock(start_time), wall_clock(end_time)
        ensure_time_valid(start_time, end_time)
        if room_id not in self.catalog:
            raise UnknownRoom(f"Unknown room: {room_id}")
        key = ScopeKey.room(room_id)
        return find_conflicts(self.repository.find_by_scope(key), key, start_time, end_time)

    def room_for(self, booking: Booking) -> Room:
        return self.catalog.get_room(booking.room_id)

    def state_of(self, booking: Booking) -> MembershipState:
        return membership_state(booking, self.room_for(booking).capacity)

    # ---------- Membership ----------

    def join(self, booking_id: str, user_id: str) -> Booking:
        return self._transition(
            booking_id,
            lambda booking: join_changes(booking, user_id, self.room_for(booking).capacity),
        )

    def leave(self, booking_id: str, user_id: str) -> Booking:
        return self._transition(booking_id, lambda booking: leave_changes(booking, user_id))

    def cancel(self, booking_id: str, acting_user_id: str) -> Booking:
        return self._transition(booking_id, lambda booking: cancel_changes(booking, acting_user_id))

    def delete(self, booking_id: str, acting_user_id: str) -> Booking:
        """
        Hard-delete a booking owned by ``acting_user_id``; returns the removed snapshot.
        """
        booking = self.repository.find(booking_id)
        ensure_can_delete(booking, acting_user_id)
        self.repository.delete(booking_id)
        return booking

    def _transition(self, booking_id: str, transition: Transition) -> Booking:
        try:
            return self._attempt(booking_id, transition)
        except ConflictFailed:
            return self._attempt(booking_id, transition)

    def _attempt(self, booking_id: str, transition: Transition) -> Booking:
        booking = self.repository.find(booking_id)
        changes = transition(booking)
        if changes is None:
            return booking
        return self.repository.conditional_update(booking_id, booking.version, changes)
