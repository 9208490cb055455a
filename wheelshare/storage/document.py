"""
Document backend.

One table ("container") per entity kind, partitioned by organization_id,
with native columns for scalar fields and JSON columns for nested ones. The
database enforces the global short-code index with a unique constraint, and
view counting is a single atomic UPDATE ... SET view_count = view_count + 1.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..core.db import create_engine, create_session_factory
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


class DocumentBase(DeclarativeBase):
    pass


# ============================================================================
# CONTAINERS
# ============================================================================

class ShareDocument(DocumentBase):
    __tablename__ = "shares"

    organization_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    share_key: Mapped[str] = mapped_column(String(64), nullable=False)
    short_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True, index=True)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    renewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    layer_config: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    view_settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Seconds until expiry at write time; a purge job may act on it
    ttl: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # stats
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    unique_visitors: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ActivityDocument(DocumentBase):
    __tablename__ = "activities"

    organization_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    highlight_color: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class LayerDocument(DocumentBase):
    __tablename__ = "layers"

    organization_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    layer_type: Mapped[str] = mapped_column(String(32), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    ring_index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ActivityTypeDocument(DocumentBase):
    __tablename__ = "activity_types"

    organization_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(64), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    highlight_color: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UserSettingsDocument(DocumentBase):
    __tablename__ = "user_settings"

    organization_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    layer_order: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    layer_visibility: Mapped[Optional[Dict[str, bool]]] = mapped_column(JSON, nullable=True)
    theme: Mapped[str] = mapped_column(String(16), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ============================================================================
# COLLECTIONS
# ============================================================================

class DocumentCollection(Generic[T]):
    """
    CRUD over one container whose columns mirror the model's field names.

    Subclasses set document_cls/model_cls and override the codec when the
    row shape differs from the model (shares keep stats in flat columns).
    """

    kind = "entity"
    document_cls: Type[DocumentBase]
    model_cls: Type[T]

    def __init__(self, sessions: async_sessionmaker, timeout: float):
        self._sessions = sessions
        self.timeout = timeout

    @property
    def _key_column(self):
        return getattr(self.document_cls, self.model_cls.key_field)

    def _pk(self, organization_id: str, row_key: str):
        return (
            self.document_cls.organization_id == organization_id,
            self._key_column == row_key,
        )

    # ── codec ────────────────────────────────────────────────────

    def _to_columns(self, entity: T) -> Dict[str, Any]:
        values = entity.model_dump(exclude={"ttl_seconds"})
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}

    def _to_document(self, entity: T):
        return self.document_cls(**self._to_columns(entity))

    def _from_document(self, doc) -> T:
        data = {name: getattr(doc, name) for name in self.model_cls.model_fields}
        return decode_or_fail(self.model_cls, data, self.kind, getattr(doc, self.model_cls.key_field))

    # ── operations ───────────────────────────────────────────────

    @guarded("create")
    async def create(self, entity: T) -> T:
        async with self._sessions.begin() as session:
            session.add(self._to_document(entity))
            try:
                await session.flush()
            except IntegrityError:
                raise AlreadyExists(f"{self.kind} {entity.row_key} already exists") from None
        return entity.model_copy(deep=True)

    @guarded("get")
    async def get(self, organization_id: str, row_key: str) -> T:
        async with self._sessions() as session:
            doc = await session.scalar(select(self.document_cls).where(*self._pk(organization_id, row_key)))
            if doc is None:
                raise NotFound(f"{self.kind} {row_key} not found")
            return self._from_document(doc)

    @guarded("update")
    async def update(self, entity: T) -> T:
        values = self._to_columns(entity)
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(self.document_cls)
                .where(*self._pk(entity.organization_id, entity.row_key))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound(f"{self.kind} {entity.row_key} not found")
            doc = await session.scalar(
                select(self.document_cls).where(*self._pk(entity.organization_id, entity.row_key))
            )
            return self._from_document(doc)

    @guarded("upsert")
    async def upsert(self, entity: T) -> T:
        async with self._sessions.begin() as session:
            await session.merge(self._to_document(entity))
        return entity.model_copy(deep=True)

    @guarded("delete")
    async def delete(self, organization_id: str, row_key: str) -> None:
        async with self._sessions.begin() as session:
            await session.execute(delete(self.document_cls).where(*self._pk(organization_id, row_key)))

    @guarded("list")
    async def list(self, organization_id: str, options: Optional[QueryOptions] = None) -> QueryResult[T]:
        after = decode_continuation_token(options.continuation_token if options else None)
        page_size = resolve_page_size(options)
        in_partition = self.document_cls.organization_id == organization_id

        stmt = select(self.document_cls).where(in_partition).order_by(self._key_column)
        if after is not None:
            stmt = stmt.where(self._key_column > after)
        if page_size is not None:
            stmt = stmt.limit(page_size + 1)

        async with self._sessions() as session:
            total = await session.scalar(select(func.count()).select_from(self.document_cls).where(in_partition))
            docs = list((await session.scalars(stmt)).all())

        token = None
        if page_size is not None and len(docs) > page_size:
            docs = docs[:page_size]
            token = encode_continuation_token(getattr(docs[-1], self.model_cls.key_field))
        return QueryResult(
            items=[self._from_document(doc) for doc in docs],
            continuation_token=token,
            total_count=total,
        )


class DocumentShareStore(DocumentCollection[ShareLink]):
    kind = "share"
    document_cls = ShareDocument
    model_cls = ShareLink

    _STATS_COLUMNS = ("view_count", "last_accessed_at", "unique_visitors")

    def _to_columns(self, share: ShareLink) -> Dict[str, Any]:
        return {
            "organization_id": share.organization_id,
            "id": share.id,
            "share_key": share.share_key,
            "short_code": share.short_code,
            "visibility": share.visibility.value,
            "created_by": share.created_by,
            "created_at": share.created_at,
            "expires_at": share.expires_at,
            "renewed_at": share.renewed_at,
            "name": share.name,
            "description": share.description,
            "layer_config": share.layer_config.model_dump(mode="json"),
            "view_settings": share.view_settings.model_dump(mode="json"),
            "is_active": share.is_active,
            "ttl": share.ttl_seconds,
            "view_count": share.stats.view_count,
            "last_accessed_at": share.stats.last_accessed_at,
            "unique_visitors": share.stats.unique_visitors,
        }

    def _from_document(self, doc: ShareDocument) -> ShareLink:
        data = {
            name: getattr(doc, name)
            for name in ShareLink.model_fields
            if name != "stats"
        }
        data["stats"] = {name: getattr(doc, name) for name in self._STATS_COLUMNS}
        return decode_or_fail(ShareLink, data, self.kind, doc.id)

    @guarded("create")
    async def create(self, share: ShareLink) -> ShareLink:
        try:
            async with self._sessions.begin() as session:
                session.add(self._to_document(share))
        except IntegrityError:
            # Either key can collide; the primary key decides which
            if await self._exists(share.organization_id, share.id):
                raise AlreadyExists(f"share {share.id} already exists") from None
            raise ShortCodeTaken(f"short code {share.short_code} is taken") from None
        return share.model_copy(deep=True)

    async def _exists(self, organization_id: str, share_id: str) -> bool:
        async with self._sessions() as session:
            found = await session.scalar(select(ShareDocument.id).where(*self._pk(organization_id, share_id)))
        return found is not None

    @guarded("update")
    async def update(self, share: ShareLink) -> ShareLink:
        values = self._to_columns(share)
        # stats are owned by increment_views
        for column in self._STATS_COLUMNS:
            values.pop(column)
        short_code = values.pop("short_code")

        async with self._sessions.begin() as session:
            stored_code = await session.scalar(
                select(ShareDocument.short_code).where(*self._pk(share.organization_id, share.id))
            )
            if stored_code is None:
                raise NotFound(f"share {share.id} not found")
            if stored_code != short_code:
                raise ValidationFailed("short_code cannot be changed")
            await session.execute(
                update(ShareDocument)
                .where(*self._pk(share.organization_id, share.id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            doc = await session.scalar(select(ShareDocument).where(*self._pk(share.organization_id, share.id)))
            return self._from_document(doc)

    @guarded("get_by_short_code")
    async def get_by_short_code(self, short_code: str) -> ShareLink:
        async with self._sessions() as session:
            doc = await session.scalar(select(ShareDocument).where(ShareDocument.short_code == short_code))
            if doc is None:
                raise NotFound(f"short code {short_code} not found")
            return self._from_document(doc)

    @guarded("increment_views")
    async def increment_views(self, organization_id: str, share_id: str) -> None:
        async with self._sessions.begin() as session:
            await session.execute(
                update(ShareDocument)
                .where(*self._pk(organization_id, share_id))
                .values(view_count=ShareDocument.view_count + 1, last_accessed_at=utc_now())
                .execution_options(synchronize_session=False)
            )


class DocumentActivityStore(DocumentCollection[Activity]):
    kind = "activity"
    document_cls = ActivityDocument
    model_cls = Activity

    @guarded("list_by_layers")
    async def list_by_layers(
        self, organization_id: str, layer_ids: Sequence[str], year: Optional[int] = None
    ) -> List[Activity]:
        if not layer_ids:
            return []
        stmt = select(ActivityDocument).where(
            ActivityDocument.organization_id == organization_id,
            ActivityDocument.scope.in_(list(layer_ids)),
        )
        if year is not None:
            stmt = stmt.where(
                ActivityDocument.start_date < datetime(year + 1, 1, 1, tzinfo=timezone.utc),
                ActivityDocument.end_date >= datetime(year, 1, 1, tzinfo=timezone.utc),
            )
        stmt = stmt.order_by(ActivityDocument.start_date, ActivityDocument.id)
        async with self._sessions() as session:
            docs = (await session.scalars(stmt)).all()
        return [self._from_document(doc) for doc in docs]


class DocumentLayerStore(DocumentCollection[Layer]):
    kind = "layer"
    document_cls = LayerDocument
    model_cls = Layer


class DocumentActivityTypeStore(DocumentCollection[ActivityTypeConfig]):
    kind = "activity type"
    document_cls = ActivityTypeDocument
    model_cls = ActivityTypeConfig


class DocumentUserSettingsStore(DocumentCollection[UserSettings]):
    kind = "user settings"
    document_cls = UserSettingsDocument
    model_cls = UserSettings

    async def get(self, organization_id: str, user_id: str) -> UserSettings:
        try:
            return await super().get(organization_id, user_id)
        except NotFound:
            return UserSettings.default(organization_id, user_id)


async def open_document_storage(url: str, timeout: float) -> Storage:
    engine = create_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(DocumentBase.metadata.create_all)
    sessions = create_session_factory(engine)
    logger.info(f"[STORAGE] Document store ready ({engine.url.get_backend_name()})")
    return Storage(
        shares=DocumentShareStore(sessions, timeout),
        activities=DocumentActivityStore(sessions, timeout),
        layers=DocumentLayerStore(sessions, timeout),
        activity_types=DocumentActivityTypeStore(sessions, timeout),
        user_settings=DocumentUserSettingsStore(sessions, timeout),
        backend="document",
        closer=engine.dispose,
    )
