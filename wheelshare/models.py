"""
Domain models for the annual wheel and its share links.

Every entity lives inside an organization (the tenant boundary) and is keyed
by a row key unique within it: `id` for shares, activities and layers, `key`
for activity type configs, `user_id` for user settings. Entities refer to
each other by id only.

The JSON wire format is camelCase (`shareKey`, `layerConfig`, ...); Python
code uses the snake_case field names.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, ClassVar, Dict, List, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel

SHARE_LIFETIME = timedelta(days=365)
RENEWAL_WINDOW = timedelta(days=30)
DEFAULT_WHEEL_TITLE = "Annual Wheel"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQL drivers without timezone support hand back naive values
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class WheelModel(BaseModel):
    """Base for all persisted entities and API payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key_field: ClassVar[str] = "id"

    @property
    def row_key(self) -> str:
        return getattr(self, self.key_field)


# ============================================================================
# ENUMS
# ============================================================================

class ShareVisibility(str, Enum):
    """Who may open a share link."""
    USERS = "users"      # authenticated members of the owning organization
    PUBLIC = "public"    # anyone holding the share key


class ShareTheme(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    AUTO = "auto"


class ActivityType(str, Enum):
    MEETING = "meeting"
    DEADLINE = "deadline"
    EVENT = "event"
    PLANNING = "planning"
    REVIEW = "review"
    TRAINING = "training"
    HOLIDAY = "holiday"
    OTHER = "other"


class LayerType(str, Enum):
    HOLIDAYS = "holidays"
    ORGANIZATION = "organization"
    CUSTOM = "custom"


class UserTheme(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


# ============================================================================
# SHARE LINKS
# ============================================================================

class ShareLayerConfig(WheelModel):
    layer_ids: List[str] = Field(default_factory=list)
    layer_visibility: Optional[Dict[str, bool]] = None
    year: Optional[int] = None


class ShareViewSettings(WheelModel):
    theme: ShareTheme = ShareTheme.LIGHT
    show_legend: bool = True
    show_title: bool = True
    custom_title: Optional[str] = None
    allow_interaction: bool = True
    rotate_to_current_month: bool = True


class ShareStats(WheelModel):
    view_count: int = 0
    last_accessed_at: Optional[UtcDateTime] = None
    unique_visitors: Optional[int] = None


class ShareLink(WheelModel):
    """
    A link exposing a filtered, read-only view of an organization's wheel.

    share_key is the credential for public shares; short_code is the globally
    unique locator used in URLs (public lookups carry no organization).
    """

    id: str
    share_key: str
    short_code: str
    visibility: ShareVisibility
    organization_id: str
    created_by: str
    created_at: UtcDateTime
    expires_at: UtcDateTime
    renewed_at: Optional[UtcDateTime] = None
    name: Optional[str] = None
    description: Optional[str] = None
    layer_config: ShareLayerConfig
    view_settings: ShareViewSettings = Field(default_factory=ShareViewSettings)
    stats: ShareStats = Field(default_factory=ShareStats)
    is_active: bool = True

    @computed_field
    @property
    def ttl_seconds(self) -> int:
        return max(0, int((self.expires_at - utc_now()).total_seconds()))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def needs_renewal(self, now: Optional[datetime] = None) -> bool:
        """True when the link expires within the next 30 days (or already has)."""
        return self.expires_at - (now or utc_now()) < RENEWAL_WINDOW

    @property
    def title(self) -> str:
        return self.view_settings.custom_title or self.name or DEFAULT_WHEEL_TITLE


# ============================================================================
# WHEEL CONTENT
# ============================================================================

class Activity(WheelModel):
    """A planned event on the wheel; `scope` is the id of its layer."""

    id: str
    title: str
    start_date: UtcDateTime
    end_date: UtcDateTime
    activity_type: ActivityType = Field(default=ActivityType.OTHER, alias="type")
    color: str
    highlight_color: str
    description: Optional[str] = None
    scope: str
    organization_id: str
    created_by: Optional[str] = None
    created_at: Optional[UtcDateTime] = None
    updated_at: Optional[UtcDateTime] = None

    @model_validator(mode="after")
    def _check_date_range(self) -> "Activity":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    def intersects_year(self, year: int) -> bool:
        year_start = datetime(year, 1, 1, tzinfo=timezone.utc)
        next_year = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        return self.start_date < next_year and self.end_date >= year_start


class Layer(WheelModel):
    """A ring of the wheel. ring_index 0 is the innermost ring."""

    id: str
    name: str
    description: Optional[str] = None
    layer_type: LayerType = Field(default=LayerType.CUSTOM, alias="type")
    color: str
    ring_index: int = Field(ge=0)
    is_visible: bool = True
    organization_id: str
    created_by: str
    created_at: UtcDateTime
    updated_at: Optional[UtcDateTime] = None


class ActivityTypeConfig(WheelModel):
    """Admin-editable presentation of an activity type. System rows cannot be deleted."""

    key_field: ClassVar[str] = "key"

    key: str
    label: str
    icon: str
    color: str
    highlight_color: str
    description: Optional[str] = None
    organization_id: str
    is_system: bool = False
    sort_order: int = 0


class UserSettings(WheelModel):
    key_field: ClassVar[str] = "user_id"

    user_id: str
    organization_id: str
    layer_order: Optional[List[str]] = None
    layer_visibility: Optional[Dict[str, bool]] = None
    theme: UserTheme = UserTheme.SYSTEM
    updated_at: UtcDateTime = Field(default_factory=utc_now)

    @classmethod
    def default(cls, organization_id: str, user_id: str) -> "UserSettings":
        return cls(user_id=user_id, organization_id=organization_id)


# ============================================================================
# API PAYLOADS
# ============================================================================

class CreateShareRequest(WheelModel):
    visibility: ShareVisibility
    name: Optional[str] = None
    description: Optional[str] = None
    layer_config: ShareLayerConfig
    view_settings: Optional[ShareViewSettings] = None


class UpdateShareRequest(WheelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    layer_config: Optional[ShareLayerConfig] = None
    view_settings: Optional[ShareViewSettings] = None
    is_active: Optional[bool] = None


class CreateShareResponse(WheelModel):
    share: ShareLink
    share_url: str
    embed_code: str


class ListSharesResponse(WheelModel):
    shares: List[ShareLink]
    continuation_token: Optional[str] = None
    total_count: Optional[int] = None


class ShareActivity(WheelModel):
    """The public projection of an Activity; no audit or ownership fields."""

    id: str
    title: str
    start_date: UtcDateTime
    end_date: UtcDateTime
    color: str
    highlight_color: str
    layer_id: str
    description: Optional[str] = None

    @classmethod
    def from_activity(cls, activity: Activity) -> "ShareActivity":
        return cls(
            id=activity.id,
            title=activity.title,
            start_date=activity.start_date,
            end_date=activity.end_date,
            color=activity.color,
            highlight_color=activity.highlight_color,
            layer_id=activity.scope,
            description=activity.description,
        )


class ShareAccessConfig(WheelModel):
    layers: ShareLayerConfig
    view_settings: ShareViewSettings
    organization_name: str
    title: str


class AccessShareResponse(WheelModel):
    success: bool
    error: Optional[str] = None
    config: Optional[ShareAccessConfig] = None
    activities: Optional[List[ShareActivity]] = None


class ActivityRequest(WheelModel):
    title: str
    start_date: UtcDateTime
    end_date: UtcDateTime
    activity_type: ActivityType = Field(default=ActivityType.OTHER, alias="type")
    color: str
    highlight_color: str
    description: Optional[str] = None
    scope: str

    @model_validator(mode="after")
    def _check_date_range(self) -> "ActivityRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class LayerRequest(WheelModel):
    name: str
    description: Optional[str] = None
    layer_type: LayerType = Field(default=LayerType.CUSTOM, alias="type")
    color: str
    ring_index: int = Field(ge=0)
    is_visible: bool = True


class ActivityTypeRequest(WheelModel):
    label: str
    icon: str
    color: str
    highlight_color: Optional[str] = None
    description: Optional[str] = None
    sort_order: int = 0


class UpdateUserSettingsRequest(WheelModel):
    layer_order: Optional[List[str]] = None
    layer_visibility: Optional[Dict[str, bool]] = None
    theme: Optional[UserTheme] = None
