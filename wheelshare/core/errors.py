"""
Error taxonomy shared by the storage backends and the share access engine.

Every backend raises only these types, so callers handle the same failures
whichever store is configured:

    NotFound            - no entity under (organization_id, id) / short code
    AlreadyExists       - primary key taken on create
    ShortCodeTaken      - global short-code index already holds the code
    Unauthorized        - caller may not touch this entity
    ValidationFailed    - caller input rejected before any storage call
    StorageUnavailable  - backend fault or timeout (never confused with NotFound)
    SerializationFailed - stored payload could not be decoded
"""


class StorageError(Exception):
    """Base class for every error raised by the core."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(StorageError):
    pass


class AlreadyExists(StorageError):
    pass


class ShortCodeTaken(AlreadyExists):
    """Raised when a new share's short code collides with an existing one."""


class Unauthorized(StorageError):
    pass


class ValidationFailed(StorageError):
    pass


class StorageUnavailable(StorageError):
    pass


class SerializationFailed(StorageError):
    pass
