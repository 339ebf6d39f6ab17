"""
Core module - configuration, database, errors, and response formatting.
"""
from .config import get_settings
from .db import get_session, get_sessionmaker, Base, engine, AsyncSessionLocal, UTCDateTime, utc_now
from .errors import (
    SchedulingError,
    InvalidInput,
    Unauthorized,
    NotFound,
    Conflict,
    Internal,
)
from .responses import (
    ErrorCodes,
    success_response,
    error_response,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "get_sessionmaker",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "UTCDateTime",
    "utc_now",
    # Errors
    "SchedulingError",
    "InvalidInput",
    "Unauthorized",
    "NotFound",
    "Conflict",
    "Internal",
    # Responses
    "ErrorCodes",
    "success_response",
    "error_response",
]
