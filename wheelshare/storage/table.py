"""
Partitioned table backend.

Every entity kind shares one wide table, `table_entities`, addressed by
(table_name, partition_key, row_key) with the organization as the partition.
The entity itself is a JSON blob in `data`; a few share fields are projected
into their own columns for inspection. Each write stamps a fresh etag.

The store only offers point reads, partition scans and conditional writes, so:

    - the global short-code index is a separate row
      (table_name="shortcodes", partition_key=<code>) inserted in the same
      transaction as the share, and its primary key makes codes unique;
    - updates and view counting are compare-and-swap loops on the etag.
"""

import asyncio
import json
import logging
import random
import uuid
from datetime import datetime
from typing import Callable, Generic, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import Boolean, DateTime, String, Text, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..core.db import create_engine, create_session_factory
from ..core.errors import (
    AlreadyExists,
    NotFound,
    SerializationFailed,
    ShortCodeTaken,
    StorageUnavailable,
    ValidationFailed,
)
from ..models import (
    Activity,
    ActivityTypeConfig,
    Layer,
    ShareLink,
    UserSettings,
    WheelModel,
    utc_now,
)
from .base import (
    QueryOptions,
    QueryResult,
    Storage,
    decode_continuation_token,
    encode_continuation_token,
    resolve_page_size,
)
from .sql import decode_or_fail, guarded

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=WheelModel)

SHARES_TABLE = "shares"
SHORT_CODES_TABLE = "shortcodes"
ACTIVITIES_TABLE = "activities"
LAYERS_TABLE = "layers"
ACTIVITY_TYPES_TABLE = "activitytypes"
USER_SETTINGS_TABLE = "usersettings"


class TableBase(DeclarativeBase):
    pass


class TableEntity(TableBase):
    __tablename__ = "table_entities"

    table_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    partition_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    row_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    etag: Mapped[str] = mapped_column(String(36), nullable=False)

    # Share projections
    short_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


def _new_etag() -> str:
    return str(uuid.uuid4())


class TableCollection(Generic[T]):
    kind = "entity"

    def __init__(
        self,
        sessions: async_sessionmaker,
        table_name: str,
        model_cls: Type[T],
        timeout: float,
        max_attempts: int = 25,
    ):
        self._sessions = sessions
        self.table_name = table_name
        self.model_cls = model_cls
        self.timeout = timeout
        self.max_attempts = max_attempts

    # ── codec ────────────────────────────────────────────────────

    def _encode(self, entity: T) -> str:
        return entity.model_dump_json(by_alias=True, exclude={"ttl_seconds"})

    def _decode(self, data: str, row_key: str) -> T:
        return decode_or_fail(self.model_cls, data, self.kind, row_key)

    def _columns(self, entity: T) -> dict:
        return {"data": self._encode(entity), "etag": _new_etag()}

    def _pk(self, partition_key: str, row_key: str):
        return (
            TableEntity.table_name == self.table_name,
            TableEntity.partition_key == partition_key,
            TableEntity.row_key == row_key,
        )

    # ── operations ───────────────────────────────────────────────

    @guarded("create")
    async def create(self, entity: T) -> T:
        async with self._sessions.begin() as session:
            session.add(
                TableEntity(
                    table_name=self.table_name,
                    partition_key=entity.organization_id,
                    row_key=entity.row_key,
                    **self._columns(entity),
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                raise AlreadyExists(f"{self.kind} {entity.row_key} already exists") from None
        return entity.model_copy(deep=True)

    @guarded("get")
    async def get(self, organization_id: str, row_key: str) -> T:
        async with self._sessions() as session:
            data = await session.scalar(select(TableEntity.data).where(*self._pk(organization_id, row_key)))
        if data is None:
            raise NotFound(f"{self.kind} {row_key} not found")
        return self._decode(data, row_key)

    @guarded("update")
    async def update(self, entity: T) -> T:
        return await self._compare_and_swap(
            entity.organization_id, entity.row_key, lambda current: self._merge(current, entity)
        )

    def _merge(self, current: T, incoming: T) -> T:
        return incoming.model_copy(deep=True)

    @guarded("delete")
    async def delete(self, organization_id: str, row_key: str) -> None:
        async with self._sessions.begin() as session:
            await session.execute(delete(TableEntity).where(*self._pk(organization_id, row_key)))

    @guarded("list")
    async def list(self, organization_id: str, options: Optional[QueryOptions] = None) -> QueryResult[T]:
        after = decode_continuation_token(options.continuation_token if options else None)
        page_size = resolve_page_size(options)

        stmt = (
            select(TableEntity.row_key, TableEntity.data)
            .where(
                TableEntity.table_name == self.table_name,
                TableEntity.partition_key == organization_id,
            )
            .order_by(TableEntity.row_key)
        )
        if after is not None:
            stmt = stmt.where(TableEntity.row_key > after)
        if page_size is not None:
            stmt = stmt.limit(page_size + 1)

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()

        token = None
        if page_size is not None and len(rows) > page_size:
            rows = rows[:page_size]
            token = encode_continuation_token(rows[-1].row_key)
        # Partition scans cannot count without reading everything
        return QueryResult(
            items=[self._decode(row.data, row.row_key) for row in rows],
            continuation_token=token,
            total_count=None,
        )

    async def _scan(self, organization_id: str) -> List[T]:
        async with self._sessions() as session:
            rows = (
                await session.execute(
                    select(TableEntity.row_key, TableEntity.data).where(
                        TableEntity.table_name == self.table_name,
                        TableEntity.partition_key == organization_id,
                    )
                )
            ).all()
        return [self._decode(row.data, row.row_key) for row in rows]

    async def _compare_and_swap(self, organization_id: str, row_key: str, mutate: Callable[[T], T]) -> T:
        """
        Read the row, apply `mutate`, and write it back only if the etag is unchanged.

        Retries with a short jittered backoff until the write lands or
        max_attempts is exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self._sessions() as session:
                row = (
                    await session.execute(
                        select(TableEntity.data, TableEntity.etag).where(*self._pk(organization_id, row_key))
                    )
                ).first()
                if row is None:
                    raise NotFound(f"{self.kind} {row_key} not found")

                updated = mutate(self._decode(row.data, row_key))
                result = await session.execute(
                    update(TableEntity)
                    .where(*self._pk(organization_id, row_key), TableEntity.etag == row.etag)
                    .values(**self._columns(updated))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount == 1:
                    return updated

            logger.debug(f"[STORAGE] etag conflict on {self.kind} {row_key} (attempt {attempt})")
            await asyncio.sleep(random.uniform(0, 0.002 * attempt))

        raise StorageUnavailable(
            f"{self.kind} {row_key} kept changing; gave up after {self.max_attempts} attempts"
        )


class TableShareStore(TableCollection[ShareLink]):
    kind = "share"

    def __init__(self, sessions: async_sessionmaker, timeout: float, max_attempts: int = 25):
        super().__init__(sessions, SHARES_TABLE, ShareLink, timeout, max_attempts)

    def _columns(self, share: ShareLink) -> dict:
        columns = super()._columns(share)
        columns.update(
            short_code=share.short_code,
            expires_at=share.expires_at,
            is_active=share.is_active,
        )
        return columns

    def _merge(self, current: ShareLink, incoming: ShareLink) -> ShareLink:
        if current.short_code != incoming.short_code:
            raise ValidationFailed("short_code cannot be changed")
        merged = incoming.model_copy(deep=True)
        # stats are owned by increment_views
        merged.stats = current.stats.model_copy()
        return merged

    @guarded("create")
    async def create(self, share: ShareLink) -> ShareLink:
        index = json.dumps({"organizationId": share.organization_id, "id": share.id})
        async with self._sessions.begin() as session:
            session.add(
                TableEntity(
                    table_name=SHORT_CODES_TABLE,
                    partition_key=share.short_code,
                    row_key="",
                    data=index,
                    etag=_new_etag(),
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                raise ShortCodeTaken(f"short code {share.short_code} is taken") from None

            session.add(
                TableEntity(
                    table_name=SHARES_TABLE,
                    partition_key=share.organization_id,
                    row_key=share.id,
                    **self._columns(share),
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                raise AlreadyExists(f"share {share.id} already exists") from None
        return share.model_copy(deep=True)

    @guarded("get_by_short_code")
    async def get_by_short_code(self, short_code: str) -> ShareLink:
        async with self._sessions() as session:
            index = await session.scalar(
                select(TableEntity.data).where(
                    TableEntity.table_name == SHORT_CODES_TABLE,
                    TableEntity.partition_key == short_code,
                    TableEntity.row_key == "",
                )
            )
            if index is None:
                raise NotFound(f"short code {short_code} not found")
            try:
                pointer = json.loads(index)
                organization_id, share_id = pointer["organizationId"], pointer["id"]
            except (ValueError, KeyError, TypeError):
                raise SerializationFailed(f"Short code index for {short_code} is corrupt") from None

            data = await session.scalar(select(TableEntity.data).where(*self._pk(organization_id, share_id)))
        if data is None:
            raise NotFound(f"short code {short_code} not found")
        return self._decode(data, share_id)

    @guarded("delete")
    async def delete(self, organization_id: str, share_id: str) -> None:
        async with self._sessions.begin() as session:
            short_code = await session.scalar(
                select(TableEntity.short_code).where(*self._pk(organization_id, share_id))
            )
            if short_code is None:
                return
            await session.execute(delete(TableEntity).where(*self._pk(organization_id, share_id)))
            await session.execute(
                delete(TableEntity).where(
                    TableEntity.table_name == SHORT_CODES_TABLE,
                    TableEntity.partition_key == short_code,
                )
            )

    @guarded("increment_views")
    async def increment_views(self, organization_id: str, share_id: str) -> None:
        def bump(share: ShareLink) -> ShareLink:
            share.stats.view_count += 1
            share.stats.last_accessed_at = utc_now()
            return share

        try:
            await self._compare_and_swap(organization_id, share_id, bump)
        except NotFound:
            return


class TableActivityStore(TableCollection[Activity]):
    kind = "activity"

    def __init__(self, sessions: async_sessionmaker, timeout: float):
        super().__init__(sessions, ACTIVITIES_TABLE, Activity, timeout)

    @guarded("list_by_layers")
    async def list_by_layers(
        self, organization_id: str, layer_ids: Sequence[str], year: Optional[int] = None
    ) -> List[Activity]:
        wanted = set(layer_ids)
        if not wanted:
            return []
        matches = [
            a for a in await self._scan(organization_id)
            if a.scope in wanted and (year is None or a.intersects_year(year))
        ]
        return sorted(matches, key=lambda a: (a.start_date, a.id))


class TableLayerStore(TableCollection[Layer]):
    kind = "layer"

    def __init__(self, sessions: async_sessionmaker, timeout: float):
        super().__init__(sessions, LAYERS_TABLE, Layer, timeout)


class TableActivityTypeStore(TableCollection[ActivityTypeConfig]):
    kind = "activity type"

    def __init__(self, sessions: async_sessionmaker, timeout: float):
        super().__init__(sessions, ACTIVITY_TYPES_TABLE, ActivityTypeConfig, timeout)

    async def upsert(self, config: ActivityTypeConfig) -> ActivityTypeConfig:
        try:
            return await self.create(config)
        except AlreadyExists:
            return await self.update(config)


class TableUserSettingsStore(TableCollection[UserSettings]):
    kind = "user settings"

    def __init__(self, sessions: async_sessionmaker, timeout: float):
        super().__init__(sessions, USER_SETTINGS_TABLE, UserSettings, timeout)

    async def get(self, organization_id: str, user_id: str) -> UserSettings:
        try:
            return await super().get(organization_id, user_id)
        except NotFound:
            return UserSettings.default(organization_id, user_id)

    async def upsert(self, settings: UserSettings) -> UserSettings:
        try:
            return await self.create(settings)
        except AlreadyExists:
            return await self.update(settings)


async def open_table_storage(url: str, timeout: float, increment_max_attempts: int) -> Storage:
    engine: AsyncEngine = create_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(TableBase.metadata.create_all)
    sessions = create_session_factory(engine)
    logger.info(f"[STORAGE] Table store ready ({engine.url.get_backend_name()})")
    return Storage(
        shares=TableShareStore(sessions, timeout, increment_max_attempts),
        activities=TableActivityStore(sessions, timeout),
        layers=TableLayerStore(sessions, timeout),
        activity_types=TableActivityTypeStore(sessions, timeout),
        user_settings=TableUserSettingsStore(sessions, timeout),
        backend="table",
        closer=engine.dispose,
    )
