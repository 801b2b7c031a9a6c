"""
Standardized Error Responses

Every domain failure leaves the API in the same envelope:

    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable message",
            "details": {...}  # Optional extra context
        },
        "status": "error"
    }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: No bearer token
    - INVALID_TOKEN: Bearer token expired, malformed or wrongly signed
    - VALIDATION_ERROR: Guest or owner input failed validation
    - AGENDA_INACTIVE: Booking page missing or disabled
    - SERVICE_INACTIVE: Referenced service missing or disabled
    - SLOT_CONFLICT: The requested time was claimed by someone else
    - STATE_CONFLICT: Illegal booking status transition
    - NOT_FOUND: Resource not found
    - INTERNAL_ERROR: Server-side error
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error envelope, used for OpenAPI `responses=` declarations."""
    error: ErrorDetail
    status: str = "error"


class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"
    AGENDA_INACTIVE = "AGENDA_INACTIVE"
    SERVICE_INACTIVE = "SERVICE_INACTIVE"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Conflict errors (409)
    SLOT_CONFLICT = "SLOT_CONFLICT"
    STATE_CONFLICT = "STATE_CONFLICT"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Create a standardized error response dict."""
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
