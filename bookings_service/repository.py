"""
Storage boundary for bookings.

The core reads immutable ``Booking`` snapshots and writes back through
``conditional_update``, which only succeeds if the stored version still
matches the snapshot the caller validated against.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .conflicts import ScopeKey
from .entity import Booking, new_booking_id
from .errors import ConflictFailed, NotFound

# Called with the active bookings of the scopes being locked; raises to abort the insert.
CreateGuard = Callable[[List[Booking]], None]


class BookingRepository(ABC):
    @abstractmethod
    def find(self, booking_id: str) -> Booking:
        """Return the booking or raise NotFound."""

    @abstractmethod
    def find_by_scope(self, scope_key: ScopeKey, active_only: bool = True) -> List[Booking]:
        """Bookings in a room or owned by a user, ordered by start time."""

    @abstractmethod
    def find_by_participant(self, user_id: str) -> List[Booking]:
        """Bookings the user has joined (not owned), ordered by start time."""

    @abstractmethod
    def create(
        self,
        booking: Booking,
        scope_keys: Sequence[ScopeKey] = (),
        guard: Optional[CreateGuard] = None,
    ) -> Booking:
        """
        Insert a booking.

        ``guard`` runs against the current active bookings of ``scope_keys``
        while writes to those scopes are serialized, so a conflict check done
        there cannot be invalidated by a concurrent create.
        """

    @abstractmethod
    def conditional_update(self, booking_id: str, expected_version: int, changes: Dict[str, Any]) -> Booking:
        """
        Apply ``changes`` only if the stored version equals ``expected_version``.

        Raises NotFound if the booking is gone and ConflictFailed if it was
        modified since it was read.
        """

    @abstractmethod
    def delete(self, booking_id: str) -> None:
        """Hard-delete a booking or raise NotFound."""


def _by_start(bookings: Iterable[Booking]) -> List[Booking]:
    return sorted(bookings, key=lambda b: (b.start_time, b.id))


class InMemoryBookingRepository(BookingRepository):
    """
    Dict-backed repository; a single lock serializes every write.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._by_id: Dict[str, Booking] = {}

    def find(self, booking_id: str) -> Booking:
        with self._lock:
            booking = self._by_id.get(booking_id)
        if booking is None:
            raise NotFound()
        return booking

    def find_by_scope(self, scope_key: ScopeKey, active_only: bool = True) -> List[Booking]:
        with self._lock:
            return self._scope(scope_key, active_only)

    def find_by_participant(self, user_id: str) -> List[Booking]:
        with self._lock:
            return _by_start(b for b in self._by_id.values() if user_id in b.participants)

    def create(
        self,
        booking: Booking,
        scope_keys: Sequence[ScopeKey] = (),
        guard: Optional[CreateGuard] = None,
    ) -> Booking:
        if not booking.id:
            booking = booking.model_copy(update={"id": new_booking_id()})
        with self._lock:
            if guard is not None:
                existing: Dict[str, Booking] = {}
                for key in scope_keys:
                    existing.update((b.id, b) for b in self._scope(key, active_only=True))
                guard(_by_start(existing.values()))
            if booking.id in self._by_id:
                raise ConflictFailed("Booking id already exists")
            self._by_id[booking.id] = booking
        return booking

    def conditional_update(self, booking_id: str, expected_version: int, changes: Dict[str, Any]) -> Booking:
        with self._lock:
            current = self._by_id.get(booking_id)
            if current is None:
                raise NotFound()
            if current.version != expected_version:
                raise ConflictFailed()
            updated = current.model_copy(
                update={**changes, "version": current.version + 1, "updated_at": datetime.now()}
            )
            self._by_id[booking_id] = updated
        return updated

    def delete(self, booking_id: str) -> None:
        with self._lock:
            if self._by_id.pop(booking_id, None) is None:
                raise NotFound()

    def _scope(self, scope_key: ScopeKey, active_only: bool) -> List[Booking]:
        return _by_start(
            b
            for b in self._by_id.values()
            if scope_key.matches(b) and (b.is_active or not active_only)
        )
