"""
Core module - configuration, error taxonomy, database engines, request context, and response formatting.
"""
from .config import Settings, StorageType, get_settings
from .errors import (
    AlreadyExists,
    NotFound,
    SerializationFailed,
    ShortCodeTaken,
    StorageError,
    StorageUnavailable,
    Unauthorized,
    ValidationFailed,
)
from .responses import ErrorCodes, error_response

__all__ = [
    # Config
    "Settings",
    "StorageType",
    "get_settings",
    # Errors
    "StorageError",
    "NotFound",
    "AlreadyExists",
    "ShortCodeTaken",
    "Unauthorized",
    "ValidationFailed",
    "StorageUnavailable",
    "SerializationFailed",
    # Responses
    "ErrorCodes",
    "error_response",
]
