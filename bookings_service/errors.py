"""
Typed failures raised by the booking core.

Every error carries a stable ``code`` (returned to API clients), the HTTP
status the transport maps it to, and whether retrying can succeed.
"""
from typing import Optional

from fastapi import status


class BookingError(Exception):
    code = "BookingError"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False
    default_detail = "Booking operation failed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


# ---------- Validation ----------


class BookingValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTimeRange(BookingValidationError):
    code = "InvalidTimeRange"
    default_detail = "end_time must be after start_time"


class DurationExceeded(BookingValidationError):
    code = "DurationExceeded"
    default_detail = "Booking exceeds the maximum allowed duration"


class UnknownRoom(BookingValidationError):
    code = "UnknownRoom"
    default_detail = "Unknown room"


class MissingField(BookingValidationError):
    code = "MissingField"
    default_detail = "Missing required fields"


# ---------- Conflict ----------


class ConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT


class TimeSlotConflict(ConflictError):
    code = "TimeSlotConflict"
    default_detail = "Room is already booked for this time range"


class RoomFull(ConflictError):
    code = "RoomFull"
    default_detail = "Room capacity reached for this booking"


class AlreadyJoined(ConflictError):
    code = "AlreadyJoined"
    default_detail = "User already joined this booking"


class BookingCancelled(ConflictError):
    code = "BookingCancelled"
    default_detail = "Booking has been cancelled"


class ConflictFailed(ConflictError):
    """A concurrent write changed the booking between read and update."""

    code = "ConflictFailed"
    retryable = True
    default_detail = "Booking was modified concurrently, please retry"


# ---------- Authorization ----------


class AuthorizationError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class Forbidden(AuthorizationError):
    code = "Forbidden"
    default_detail = "Only the booking owner can do this"


class OwnerCannotJoinOwnBooking(AuthorizationError):
    code = "OwnerCannotJoinOwnBooking"
    default_detail = "Owner is already part of this booking"


class OwnerCannotLeave(AuthorizationError):
    code = "OwnerCannotLeave"
    default_detail = "Owner cannot leave; cancel or delete the booking instead"


class NotAParticipant(AuthorizationError):
    code = "NotAParticipant"
    default_detail = "User is not a participant of this booking"


# ---------- Not found ----------


class NotFound(BookingError):
    code = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Booking not found"


# ---------- Infrastructure ----------


class RepositoryUnavailable(BookingError):
    code = "RepositoryUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True
    default_detail = "Booking store is temporarily unavailable"


class Unauthenticated(BookingError):
    code = "Unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"
