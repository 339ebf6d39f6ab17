"""
Standardized API Response Module

Provides consistent response formatting across all API endpoints. The
conversational channel relays these bodies to a human, so every response
carries a top-level ``success`` flag and failures a readable ``error``.

RESPONSE FORMAT:
    Success:
        {
            "success": true,
            ...operation fields...
        }

    Error:
        {
            "success": false,
            "error": "Human-readable message",
            "code": "ERROR_CODE",
            ...optional extra context...
        }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: Missing or wrong shared secret
    - NOT_FOUND: Unit, barber, service, client or appointment not found
    - VALIDATION_ERROR: Request data failed validation
    - CONFLICT: Slot already taken, or record already exists
    - INTERNAL_ERROR: Server-side error
"""

from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"
    UNIT_NOT_FOUND = "UNIT_NOT_FOUND"

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Conflict errors (409)
    CONFLICT = "CONFLICT"
    SLOT_TAKEN = "SLOT_TAKEN"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    TOO_RECENT = "TOO_RECENT"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(**fields: Any) -> dict:
    """Create a standardized success response dict."""
    return {"success": True, **fields}


def error_response(
    message: str,
    code: Optional[str] = None,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.

    ``details`` are merged into the top level so the channel can read
    them next to ``error`` (e.g. ``existing_client`` on a duplicate).
    """
    response: dict[str, Any] = {"success": False, "error": message}
    if code:
        response["code"] = code
    if details:
        response.update(details)
    return response
