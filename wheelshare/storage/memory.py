"""
In-memory backend for development and tests.

Everything lives in process dictionaries keyed by (organization_id, row_key).
Each collection serializes its mutations behind one asyncio.Lock, so the
read-modify-write in increment_views cannot lose an update. Entities are
deep-copied on the way in and out; callers never share state with the store.
"""

import asyncio
import logging
from typing import Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from ..core.errors import AlreadyExists, NotFound, ShortCodeTaken, ValidationFailed
from ..models import (
    Activity,
    ActivityTypeConfig,
    Layer,
    ShareLink,
    UserSettings,
    WheelModel,
    utc_now,
)
from .base import QueryOptions, QueryResult, Storage, paginate

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=WheelModel)


class MemoryCollection(Generic[T]):
    kind = "entity"

    def __init__(self):
        self._lock = asyncio.Lock()
        self._rows: Dict[Tuple[str, str], T] = {}

    @staticmethod
    def _copy(entity: T) -> T:
        return entity.model_copy(deep=True)

    async def create(self, entity: T) -> T:
        key = (entity.organization_id, entity.row_key)
        async with self._lock:
            if key in self._rows:
                raise AlreadyExists(f"{self.kind} {entity.row_key} already exists")
            self._rows[key] = self._copy(entity)
        return self._copy(entity)

    async def get(self, organization_id: str, row_key: str) -> T:
        async with self._lock:
            entity = self._rows.get((organization_id, row_key))
            if entity is None:
                raise NotFound(f"{self.kind} {row_key} not found")
            return self._copy(entity)

    async def update(self, entity: T) -> T:
        key = (entity.organization_id, entity.row_key)
        async with self._lock:
            if key not in self._rows:
                raise NotFound(f"{self.kind} {entity.row_key} not found")
            self._rows[key] = self._copy(entity)
        return self._copy(entity)

    async def delete(self, organization_id: str, row_key: str) -> None:
        async with self._lock:
            self._rows.pop((organization_id, row_key), None)

    async def list(self, organization_id: str, options: Optional[QueryOptions] = None) -> QueryResult[T]:
        async with self._lock:
            rows = sorted(
                (self._copy(e) for (org, _), e in self._rows.items() if org == organization_id),
                key=lambda e: e.row_key,
            )
        result = paginate(rows, lambda e: e.row_key, options)
        result.total_count = len(rows)
        return result


class MemoryShareStore(MemoryCollection[ShareLink]):
    kind = "share"

    def __init__(self):
        super().__init__()
        self._short_codes: Dict[str, Tuple[str, str]] = {}

    async def create(self, share: ShareLink) -> ShareLink:
        key = (share.organization_id, share.id)
        async with self._lock:
            if key in self._rows:
                raise AlreadyExists(f"share {share.id} already exists")
            if share.short_code in self._short_codes:
                raise ShortCodeTaken(f"short code {share.short_code} is taken")
            self._rows[key] = self._copy(share)
            self._short_codes[share.short_code] = key
        return self._copy(share)

    async def get_by_short_code(self, short_code: str) -> ShareLink:
        async with self._lock:
            key = self._short_codes.get(short_code)
            if key is None or key not in self._rows:
                raise NotFound(f"short code {short_code} not found")
            return self._copy(self._rows[key])

    async def update(self, share: ShareLink) -> ShareLink:
        key = (share.organization_id, share.id)
        async with self._lock:
            current = self._rows.get(key)
            if current is None:
                raise NotFound(f"share {share.id} not found")
            if current.short_code != share.short_code:
                raise ValidationFailed("short_code cannot be changed")
            stored = self._copy(share)
            # stats are owned by increment_views
            stored.stats = current.stats.model_copy()
            self._rows[key] = stored
            return self._copy(stored)

    async def delete(self, organization_id: str, share_id: str) -> None:
        async with self._lock:
            share = self._rows.pop((organization_id, share_id), None)
            if share is not None:
                self._short_codes.pop(share.short_code, None)

    async def increment_views(self, organization_id: str, share_id: str) -> None:
        async with self._lock:
            share = self._rows.get((organization_id, share_id))
            if share is None:
                return
            share.stats.view_count += 1
            share.stats.last_accessed_at = utc_now()


class MemoryActivityStore(MemoryCollection[Activity]):
    kind = "activity"

    async def list_by_layers(
        self, organization_id: str, layer_ids: Sequence[str], year: Optional[int] = None
    ) -> List[Activity]:
        wanted = set(layer_ids)
        async with self._lock:
            matches = [
                self._copy(a)
                for (org, _), a in self._rows.items()
                if org == organization_id
                and a.scope in wanted
                and (year is None or a.intersects_year(year))
            ]
        return sorted(matches, key=lambda a: (a.start_date, a.id))


class MemoryLayerStore(MemoryCollection[Layer]):
    kind = "layer"


class MemoryActivityTypeStore(MemoryCollection[ActivityTypeConfig]):
    kind = "activity type"

    async def upsert(self, config: ActivityTypeConfig) -> ActivityTypeConfig:
        async with self._lock:
            self._rows[(config.organization_id, config.key)] = self._copy(config)
        return self._copy(config)


class MemoryUserSettingsStore(MemoryCollection[UserSettings]):
    kind = "user settings"

    async def get(self, organization_id: str, user_id: str) -> UserSettings:
        async with self._lock:
            settings = self._rows.get((organization_id, user_id))
            if settings is None:
                return UserSettings.default(organization_id, user_id)
            return self._copy(settings)

    async def upsert(self, settings: UserSettings) -> UserSettings:
        async with self._lock:
            self._rows[(settings.organization_id, settings.user_id)] = self._copy(settings)
        return self._copy(settings)


def build_memory_storage() -> Storage:
    logger.warning("[STORAGE] Using in-memory storage; data is lost on restart")
    return Storage(
        shares=MemoryShareStore(),
        activities=MemoryActivityStore(),
        layers=MemoryLayerStore(),
        activity_types=MemoryActivityTypeStore(),
        user_settings=MemoryUserSettingsStore(),
        backend="memory",
    )
