"""Helpers shared by the SQL-backed stores."""

import asyncio
import functools
import logging

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import SerializationFailed, StorageError, StorageUnavailable

logger = logging.getLogger(__name__)


def guarded(operation: str):
    """
    Bound a store method by the store's timeout and translate driver faults.

    Only StorageError subclasses leave a guarded method. Anything the driver
    raises becomes StorageUnavailable; the original stays on __cause__.
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await asyncio.wait_for(fn(self, *args, **kwargs), timeout=self.timeout)
            except StorageError:
                raise
            except asyncio.TimeoutError as e:
                logger.error(f"[STORAGE] {self.kind}.{operation} timed out after {self.timeout}s")
                raise StorageUnavailable(f"{operation} timed out") from e
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"[STORAGE] {self.kind}.{operation} failed: {e}")
                raise StorageUnavailable(f"{operation} failed") from e

        return wrapper

    return decorator


def decode_or_fail(model_cls, data, kind: str, key: str):
    """Validate a stored payload into `model_cls`, raising SerializationFailed on bad data."""
    try:
        if isinstance(data, (str, bytes)):
            return model_cls.model_validate_json(data)
        return model_cls.model_validate(data)
    except ValidationError as e:
        logger.error(f"[STORAGE] Corrupt {kind} payload for {key}: {e.error_count()} errors")
        raise SerializationFailed(f"Stored {kind} {key} could not be decoded") from e
