"""
Storage contract shared by every backend.

Each entity kind has one Protocol listing exactly the operations callers may
use. A backend satisfies the contract structurally; nothing inherits from
these classes. The process builds one `Storage` bundle at startup and hands
the same instance to every request.

Rules every implementation follows:
    - All reads and writes are scoped by organization_id, except
      ShareStore.get_by_short_code which resolves the global index.
    - create never overwrites; update never creates; delete is idempotent.
    - Returned entities are copies the caller owns.
    - Pagination is keyset based: the continuation token is opaque and encodes
      the last row key returned, never an offset.
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Protocol, Sequence, TypeVar

from ..core.errors import ValidationFailed
from ..models import Activity, ActivityTypeConfig, Layer, ShareLink, UserSettings

T = TypeVar("T")

MAX_PAGE_SIZE = 500


@dataclass
class QueryOptions:
    """page_size=None returns the whole organization partition in one page."""
    page_size: Optional[int] = None
    continuation_token: Optional[str] = None


@dataclass
class QueryResult(Generic[T]):
    items: List[T] = field(default_factory=list)
    continuation_token: Optional[str] = None
    total_count: Optional[int] = None


# ────────────────────────────────────────────────────────────────
# Continuation tokens
# ────────────────────────────────────────────────────────────────

def encode_continuation_token(after_key: str) -> str:
    payload = json.dumps({"after": after_key}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii")


def decode_continuation_token(token: Optional[str]) -> Optional[str]:
    """Return the row key to resume after, or None to start from the beginning."""
    if not token:
        return None
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        after = payload["after"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise ValidationFailed("Invalid continuation token") from None
    if not isinstance(after, str):
        raise ValidationFailed("Invalid continuation token")
    return after


def resolve_page_size(options: Optional[QueryOptions]) -> Optional[int]:
    if options is None or options.page_size is None:
        return None
    if options.page_size < 1:
        raise ValidationFailed("page_size must be at least 1")
    return min(options.page_size, MAX_PAGE_SIZE)


def paginate(items: Sequence[T], key: Callable[[T], str], options: Optional[QueryOptions]) -> QueryResult[T]:
    """
    Page an already filtered sequence that is sorted by `key`.

    Used by backends that read a whole partition and page in process.
    """
    after = decode_continuation_token(options.continuation_token if options else None)
    page_size = resolve_page_size(options)
    remaining = [item for item in items if after is None or key(item) > after]
    if page_size is None or len(remaining) <= page_size:
        return QueryResult(items=list(remaining), continuation_token=None)
    page = list(remaining[:page_size])
    return QueryResult(items=page, continuation_token=encode_continuation_token(key(page[-1])))


# ────────────────────────────────────────────────────────────────
# Per-kind contracts
# ────────────────────────────────────────────────────────────────

class ShareStore(Protocol):
    async def create(self, share: ShareLink) -> ShareLink: ...

    async def get(self, organization_id: str, share_id: str) -> ShareLink: ...

    async def get_by_short_code(self, short_code: str) -> ShareLink: ...

    async def update(self, share: ShareLink) -> ShareLink: ...

    async def delete(self, organization_id: str, share_id: str) -> None: ...

    async def list(
        self, organization_id: str, options: Optional[QueryOptions] = None
    ) -> QueryResult[ShareLink]: ...

    async def increment_views(self, organization_id: str, share_id: str) -> None: ...


class ActivityStore(Protocol):
    async def create(self, activity: Activity) -> Activity: ...

    async def get(self, organization_id: str, activity_id: str) -> Activity: ...

    async def update(self, activity: Activity) -> Activity: ...

    async def delete(self, organization_id: str, activity_id: str) -> None: ...

    async def list(
        self, organization_id: str, options: Optional[QueryOptions] = None
    ) -> QueryResult[Activity]: ...

    async def list_by_layers(
        self, organization_id: str, layer_ids: Sequence[str], year: Optional[int] = None
    ) -> List[Activity]: ...


class LayerStore(Protocol):
    async def create(self, layer: Layer) -> Layer: ...

    async def get(self, organization_id: str, layer_id: str) -> Layer: ...

    async def update(self, layer: Layer) -> Layer: ...

    async def delete(self, organization_id: str, layer_id: str) -> None: ...

    async def list(
        self, organization_id: str, options: Optional[QueryOptions] = None
    ) -> QueryResult[Layer]: ...


class ActivityTypeStore(Protocol):
    async def create(self, config: ActivityTypeConfig) -> ActivityTypeConfig: ...

    async def get(self, organization_id: str, key: str) -> ActivityTypeConfig: ...

    async def update(self, config: ActivityTypeConfig) -> ActivityTypeConfig: ...

    async def upsert(self, config: ActivityTypeConfig) -> ActivityTypeConfig: ...

    async def delete(self, organization_id: str, key: str) -> None: ...

    async def list(
        self, organization_id: str, options: Optional[QueryOptions] = None
    ) -> QueryResult[ActivityTypeConfig]: ...


class UserSettingsStore(Protocol):
    async def get(self, organization_id: str, user_id: str) -> UserSettings:
        """Stored settings, or UserSettings.default(...) when none were saved."""
        ...

    async def upsert(self, settings: UserSettings) -> UserSettings: ...

    async def delete(self, organization_id: str, user_id: str) -> None: ...


async def _nothing_to_close() -> None:
    return None


@dataclass(frozen=True)
class Storage:
    """The single long-lived store handle shared by all requests."""

    shares: ShareStore
    activities: ActivityStore
    layers: LayerStore
    activity_types: ActivityTypeStore
    user_settings: UserSettingsStore
    backend: str = "memory"
    closer: Callable[[], Awaitable[None]] = _nothing_to_close

    async def close(self) -> None:
        await self.closer()
