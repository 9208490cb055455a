"""
Standardized API Response Module

Every non-2xx response from the management API uses one envelope:

    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable message",
            "details": {...}  # Optional extra context
        },
        "status": "error"
    }

The public share endpoint is the exception: it always answers 200 with
{"success": bool, "error"?, "config"?, "activities"?} so a viewer can render
the failure itself.
"""

from typing import Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Conflict errors (409)
    ALREADY_EXISTS = "ALREADY_EXISTS"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (500 / 503)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


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
