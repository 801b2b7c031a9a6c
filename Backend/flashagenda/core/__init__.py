"""
Core module - configuration, database and response formatting.
"""
from .config import get_settings
from .db import get_session, Base, engine, AsyncSessionLocal
from .responses import (
    ErrorDetail,
    ErrorResponse,
    ErrorCodes,
    error_response,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Responses
    "ErrorDetail",
    "ErrorResponse",
    "ErrorCodes",
    "error_response",
]
