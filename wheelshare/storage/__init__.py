"""
Storage backends and the factory that picks one from settings.

The backend is chosen once per process by STORAGE_TYPE; everything else in
the app talks to the `Storage` bundle and never to a concrete backend.
"""

import logging

from ..core.config import Settings, StorageType
from .base import QueryOptions, QueryResult, Storage
from .memory import build_memory_storage

logger = logging.getLogger(__name__)

__all__ = ["QueryOptions", "QueryResult", "Storage", "build_storage"]


async def build_storage(settings: Settings) -> Storage:
    logger.info(f"[STORAGE] Initializing {settings.storage_display_name}")

    if settings.storage_type == StorageType.TABLE:
        from .table import open_table_storage

        return await open_table_storage(
            settings.table_database_url,
            timeout=settings.storage_timeout_seconds,
            increment_max_attempts=settings.increment_max_attempts,
        )

    if settings.storage_type == StorageType.DOCUMENT:
        from .document import open_document_storage

        return await open_document_storage(
            settings.document_database_url,
            timeout=settings.storage_timeout_seconds,
        )

    return build_memory_storage()
