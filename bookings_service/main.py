import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from common.cache import bump_generation, delete_prefix, get_cached_json, get_generation, set_cached_json
from common.circuit_breaker import CircuitBreaker

from . import config, schemas
from .auth import get_current_user_id
from .conflicts import ROOM_SCOPE, USER_SCOPE, ScopeKey
from .database import Base, SessionLocal, engine
from .entity import Booking, UserId
from .errors import BookingError
from .rooms import RoomCatalog
from .service import BookingService
from .sql_repository import SqlAlchemyBookingRepository

logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Bookings Service", version="1.0.0")
router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "bookings"
AVAILABILITY_CACHE_PREFIX = "bookings:availability:"

repository_breaker = CircuitBreaker(
    name="bookings_repository",
    max_failures=config.REPOSITORY_MAX_FAILURES,
    reset_timeout_seconds=config.REPOSITORY_RESET_TIMEOUT_SECONDS,
)

booking_service = BookingService(
    repository=SqlAlchemyBookingRepository(SessionLocal, repository_breaker),
    catalog=RoomCatalog(),
    max_duration=config.max_booking_duration(),
    conflict_scopes=config.conflict_scope_kinds(),
)


def get_booking_service() -> BookingService:
    """
    FastAPI dependency returning the process-wide booking service.
    """
    return booking_service


def _error_body(request: Request, status_code: int, detail, code: Optional[str] = None) -> dict:
    body = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    if code is not None:
        body["code"] = code
    return body


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(BookingError)
async def booking_exception_handler(request: Request, exc: BookingError):
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif exc.retryable and exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": str(config.REPOSITORY_RESET_TIMEOUT_SECONDS)}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail, exc.code),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "bookings", "status": "running", "repository": repository_breaker.state}


def to_read(service: BookingService, booking: Booking) -> schemas.BookingRead:
    return schemas.BookingRead.from_booking(booking, service.room_for(booking), service.state_of(booking))


def availability_namespace(room_id: str) -> str:
    return f"{AVAILABILITY_CACHE_PREFIX}{room_id}"


def invalidate_availability(room_id: str) -> None:
    # Bump first: a check still computing under the old generation caches under a dead key
    generation = bump_generation(availability_namespace(room_id))
    if generation:
        delete_prefix(f"{availability_namespace(room_id)}:g{generation - 1}:")


def parse_scope(scope: str) -> ScopeKey:
    """
    Parse a 'room:{id}' or 'user:{id}' scope query parameter.
    """
    kind, _, value = scope.partition(":")
    if kind not in (ROOM_SCOPE, USER_SCOPE) or not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="scope must be 'mine', 'room:<id>' or 'user:<id>'",
        )
    return ScopeKey(kind, value)


# ---------- Rooms (read-only catalog) ----------


@router_v1.get("/rooms", response_model=List[schemas.RoomRead])
def list_rooms(service: BookingService = Depends(get_booking_service)):
    """
    List the rooms that can be booked.
    """
    return [schemas.RoomRead.from_room(room) for room in service.catalog.list_rooms()]


@router_v1.get("/rooms/{room_id}", response_model=schemas.RoomRead)
def get_room(room_id: str, service: BookingService = Depends(get_booking_service)):
    return schemas.RoomRead.from_room(service.catalog.get_room(room_id))


# ---------- Check room availability ----------


@router_v1.get("/bookings/availability", response_model=schemas.AvailabilityRead)
def check_availability(
    room_id: str,
    start_time: datetime,
    end_time: datetime,
    service: BookingService = Depends(get_booking_service),
    _: UserId = Depends(get_current_user_id),
):
    """
    Check if a room is free during a given time range.

    Results are cached in Redis (when configured) under the room's current
    generation. Every booking write in the room bumps the generation, so a
    result computed before that write is never served after it.

    Returns
    -------
    AvailabilityRead
        Whether the room is free, and which active bookings block it if not.

    Raises
    ------
    InvalidTimeRange, UnknownRoom
        If the window or room is invalid.
    """
    generation = get_generation(availability_namespace(room_id))
    cache_key = None
    if generation is not None:
        cache_key = (
            f"{availability_namespace(room_id)}:g{generation}:"
            f"{start_time.isoformat()}:{end_time.isoformat()}"
        )
        cached = get_cached_json(cache_key)
        if cached is not None:
            return cached

    conflicts = service.check_availability(room_id, start_time, end_time)
    result = schemas.AvailabilityRead(
        room_id=room_id,
        start_time=start_time,
        end_time=end_time,
        available=not conflicts,
        conflicting_booking_ids=[b.id for b in conflicts],
    )
    if cache_key is not None:
        set_cached_json(cache_key, result.model_dump(mode="json"), config.AVAILABILITY_CACHE_TTL_SECONDS)
    return result


# ---------- Create booking ----------


@router_v1.post("/bookings", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    booking_in: schemas.BookingCreate,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    Create a new booking owned by the authenticated user.

    Behavior
    --------
    - Validates the time range, maximum duration and room.
    - Rejects bookings overlapping an active booking in the same room
      (and, when enabled, another booking of the same owner).
    - The owner is implicitly a participant.

    Raises
    ------
    MissingField, InvalidTimeRange, DurationExceeded, UnknownRoom
        400 for invalid input.
    TimeSlotConflict
        409 if the slot is taken.
    """
    start_time, end_time = booking_in.resolve_window()
    booking = service.create_booking(user_id, booking_in.room_id, start_time, end_time, booking_in.notes)
    invalidate_availability(booking.room_id)
    logger.info("User %s booked room %s as %s", user_id, booking.room_id, booking.id)
    return to_read(service, booking)


# ---------- List bookings ----------


@router_v1.get("/bookings", response_model=List[schemas.BookingRead])
def list_bookings(
    scope: str = Query(default="mine"),
    active_only: bool = False,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    List bookings by scope.

    Parameters
    ----------
    scope : str
        'mine' (owned or joined by the caller), 'room:{id}' or 'user:{id}'
        (owned by that user).
    active_only : bool
        Hide cancelled bookings.
    """
    if scope == "mine":
        bookings = service.list_mine(user_id)
        if active_only:
            bookings = [b for b in bookings if b.is_active]
    else:
        bookings = service.list_bookings(parse_scope(scope), active_only=active_only)
    return [to_read(service, b) for b in bookings]


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    _: UserId = Depends(get_current_user_id),
):
    return to_read(service, service.get_booking(booking_id))


# ---------- Membership ----------


@router_v1.post("/bookings/{booking_id}/join", response_model=schemas.BookingRead)
def join_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    Join an active booking as a participant.

    Raises
    ------
    NotFound, BookingCancelled, OwnerCannotJoinOwnBooking, AlreadyJoined, RoomFull
    """
    booking = service.join(booking_id, user_id)
    logger.info("User %s joined booking %s", user_id, booking_id)
    return to_read(service, booking)


@router_v1.post("/bookings/{booking_id}/leave", response_model=schemas.BookingRead)
def leave_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    Leave a booking the caller joined. Owners must cancel or delete instead.
    """
    booking = service.leave(booking_id, user_id)
    logger.info("User %s left booking %s", user_id, booking_id)
    return to_read(service, booking)


@router_v1.post("/bookings/{booking_id}/cancel", response_model=schemas.BookingRead)
def cancel_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    Cancel (soft) a booking owned by the caller.

    Behavior
    --------
    - Sets the status to cancelled; the room is free again.
    - Keeps the participant list for later inspection.
    """
    booking = service.cancel(booking_id, user_id)
    invalidate_availability(booking.room_id)
    logger.info("User %s cancelled booking %s", user_id, booking_id)
    return to_read(service, booking)


@router_v1.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    user_id: UserId = Depends(get_current_user_id),
):
    """
    Permanently delete a booking owned by the caller, even if others joined it.
    """
    booking = service.delete(booking_id, user_id)
    invalidate_availability(booking.room_id)
    logger.info(
        "User %s deleted booking %s (%d participants dropped)",
        user_id,
        booking_id,
        len(booking.participants),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


app.include_router(router_v1)
