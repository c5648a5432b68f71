import json
import logging
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import String, cast
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from common.circuit_breaker import CircuitBreaker

from .conflicts import ROOM_SCOPE, ScopeKey
from .database import session_scope
from .entity import Booking, BookingStatus, new_booking_id
from .errors import BookingError, ConflictFailed, NotFound, RepositoryUnavailable
from .models import BookingRecord, ScopeLock
from .repository import BookingRepository, CreateGuard

logger = logging.getLogger(__name__)

UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class SqlAlchemyBookingRepository(BookingRepository):
    """
    Booking repository backed by the SQLAlchemy ``bookings`` table.

    Updates are compare-and-swap on the ``version`` column. Creates lock one
    ``booking_scope_locks`` row per conflict scope (``SELECT ... FOR UPDATE``)
    and are additionally serialized inside the process, which covers SQLite
    where row locks are not available.

    Database connectivity errors are reported as RepositoryUnavailable, and
    the circuit breaker refuses calls outright after repeated failures.
    """

    def __init__(self, session_factory: sessionmaker, breaker: Optional[CircuitBreaker] = None):
        self._session_factory = session_factory
        self._breaker = breaker or CircuitBreaker(name="bookings_repository")
        self._create_lock = Lock()

    @contextmanager
    def _guarded(self, operation: str):
        if not self._breaker.allow_request():
            raise RepositoryUnavailable(f"Booking store circuit is open ({self._breaker.name})")
        try:
            yield
        except UNAVAILABLE_ERRORS as exc:
            self._breaker.record_failure()
            logger.warning("Booking store %s failed: %s", operation, exc)
            raise RepositoryUnavailable() from exc
        except BookingError:
            self._breaker.record_success()
            raise
        except Exception:
            self._breaker.record_failure()
            logger.exception("Booking store %s raised unexpectedly", operation)
            raise
        else:
            self._breaker.record_success()

    # ---------- Reads ----------

    def find(self, booking_id: str) -> Booking:
        with self._guarded("find"), session_scope(self._session_factory) as db:
            record = db.get(BookingRecord, booking_id)
            if record is None:
                raise NotFound()
            return record.to_entity()

    def find_by_scope(self, scope_key: ScopeKey, active_only: bool = True) -> List[Booking]:
        with self._guarded("find_by_scope"), session_scope(self._session_factory) as db:
            return self._query_scope(db, scope_key, active_only)

    def find_by_participant(self, user_id: str) -> List[Booking]:
        # JSON containment differs per dialect; narrow with a text match, then check exactly
        needle = json.dumps(user_id)
        with self._guarded("find_by_participant"), session_scope(self._session_factory) as db:
            records = (
                db.query(BookingRecord)
                .filter(cast(BookingRecord.participants, String).contains(needle))
                .order_by(BookingRecord.start_time, BookingRecord.id)
                .all()
            )
            return [r.to_entity() for r in records if user_id in (r.participants or ())]

    # ---------- Writes ----------

    def create(
        self,
        booking: Booking,
        scope_keys: Sequence[ScopeKey] = (),
        guard: Optional[CreateGuard] = None,
    ) -> Booking:
        if not booking.id:
            booking = booking.model_copy(update={"id": new_booking_id()})

        with self._create_lock, self._guarded("create"), session_scope(self._session_factory) as db:
            for key in sorted(set(scope_keys)):
                self._lock_scope(db, str(key))

            if guard is not None:
                existing: Dict[str, Booking] = {}
                for key in scope_keys:
                    existing.update((b.id, b) for b in self._query_scope(db, key, active_only=True))
                guard(sorted(existing.values(), key=lambda b: (b.start_time, b.id)))

            db.add(BookingRecord.from_entity(booking))
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictFailed("Booking id already exists") from exc

        logger.info("Stored booking %s in room %s", booking.id, booking.room_id)
        return booking

    def conditional_update(self, booking_id: str, expected_version: int, changes: Dict[str, Any]) -> Booking:
        values = dict(changes)
        if "participants" in values:
            values["participants"] = list(values["participants"])
        values["version"] = BookingRecord.version + 1
        values["updated_at"] = datetime.now()

        with self._guarded("conditional_update"), session_scope(self._session_factory) as db:
            updated = (
                db.query(BookingRecord)
                .filter(BookingRecord.id == booking_id)
                .filter(BookingRecord.version == expected_version)
                .update(values, synchronize_session=False)
            )
            if updated == 0:
                db.rollback()
                if db.get(BookingRecord, booking_id) is None:
                    raise NotFound()
                raise ConflictFailed()

            record = db.query(BookingRecord).filter(BookingRecord.id == booking_id).one()
            booking = record.to_entity()
            db.commit()
            return booking

    def delete(self, booking_id: str) -> None:
        with self._guarded("delete"), session_scope(self._session_factory) as db:
            deleted = (
                db.query(BookingRecord)
                .filter(BookingRecord.id == booking_id)
                .delete(synchronize_session=False)
            )
            if deleted == 0:
                db.rollback()
                raise NotFound()
            db.commit()

    # ---------- Helpers ----------

    @staticmethod
    def _query_scope(db: Session, scope_key: ScopeKey, active_only: bool) -> List[Booking]:
        q = db.query(BookingRecord)
        if scope_key.kind == ROOM_SCOPE:
            q = q.filter(BookingRecord.room_id == scope_key.value)
        else:
            q = q.filter(BookingRecord.owner_id == scope_key.value)
        if active_only:
            q = q.filter(BookingRecord.status == BookingStatus.ACTIVE)
        return [r.to_entity() for r in q.order_by(BookingRecord.start_time, BookingRecord.id).all()]

    @staticmethod
    def _lock_scope(db: Session, key: str) -> None:
        row = db.query(ScopeLock).filter(ScopeLock.scope_key == key).with_for_update().first()
        if row is not None:
            return
        db.add(ScopeLock(scope_key=key))
        try:
            db.flush()
        except IntegrityError as exc:
            # Another process inserted the same lock row first
            db.rollback()
            raise ConflictFailed("Concurrent booking in the same scope, please retry") from exc
