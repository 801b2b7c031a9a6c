"""
Booking domain errors.

Only the booking transaction and the owner-side stores raise these; the slot
generator never raises for business outcomes (an empty list is a valid
"closed" answer). Each error knows its API code and HTTP status so the
exception handler in main.py can render it without a lookup table.
"""

from typing import Any, Optional

from fastapi import status

from .core.responses import ErrorCodes


class BookingError(Exception):
    code = ErrorCodes.INTERNAL_ERROR
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class BookingValidationError(BookingError):
    code = ErrorCodes.VALIDATION_ERROR
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid booking data."


class InvalidDuration(BookingValidationError):
    default_message = "Duration must be a positive number of minutes."


class AgendaInactive(BookingError):
    code = ErrorCodes.AGENDA_INACTIVE
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "This booking page is no longer available."


class ServiceInactive(BookingError):
    code = ErrorCodes.SERVICE_INACTIVE
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "This booking page is no longer available."


class SlotConflict(BookingError):
    code = ErrorCodes.SLOT_CONFLICT
    http_status = status.HTTP_409_CONFLICT
    default_message = "This time was just taken. Please pick another time."

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, {"refetch_slots": True, **(details or {})})


class InvalidStatusTransition(BookingError):
    code = ErrorCodes.STATE_CONFLICT
    http_status = status.HTTP_409_CONFLICT
    default_message = "This booking can no longer change to that status."


class NotFound(BookingError):
    code = ErrorCodes.NOT_FOUND
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found."


class InvalidWindow(BookingError):
    """A malformed availability window reached the slot generator.

    Windows are validated when written, so this means an upstream bug.
    """
    default_message = "Availability window start must be before its end."
