"""
Error taxonomy shared by the scheduling core and both HTTP surfaces.

Core functions raise these; the exception handlers in ``agenda.main`` turn
them into ``{"success": false, "error": ...}`` bodies with the matching
status code. Nothing here knows about FastAPI.
"""

from typing import Any, Optional

from .responses import ErrorCodes


class SchedulingError(Exception):
    """Base class for every expected, user-facing failure."""

    status_code: int = 500
    code: str = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details
        super().__init__(message)


class InvalidInput(SchedulingError):
    """Malformed or missing fields; the caller can fix and resubmit."""

    status_code = 400
    code = ErrorCodes.INVALID_INPUT


class Unauthorized(SchedulingError):
    status_code = 401
    code = ErrorCodes.AUTHENTICATION_REQUIRED


class NotFound(SchedulingError):
    """Unmatched unit, barber, service, client or appointment."""

    status_code = 404
    code = ErrorCodes.NOT_FOUND


class Conflict(SchedulingError):
    """
    Write-time conflict: slot taken, duplicate client, too-recent cancel.

    Never retried server-side; the caller must re-query and resubmit.
    """

    status_code = 409
    code = ErrorCodes.CONFLICT


class Internal(SchedulingError):
    status_code = 500
    code = ErrorCodes.INTERNAL_ERROR
