"""
Wheel content routes: activities, layers, activity types and user settings.

Everything is scoped to the caller's organization. Layer and activity type
writes need the admin role; activities are editable by any member.

    GET/POST          /api/activities            (?layerIds=a,b&year=2025)
    GET/PUT/DELETE    /api/activities/{id}
    GET               /api/layers
    POST              /api/layers                 admin
    PUT/DELETE        /api/layers/{id}            admin
    GET               /api/activity-types         (seeds the built-in types)
    PUT/DELETE        /api/activity-types/{key}   admin
    GET/PUT/DELETE    /api/user/settings
"""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .core.errors import AlreadyExists, NotFound, Unauthorized, ValidationFailed
from .core.request_context import get_identity, get_storage, require_admin
from .defaults import darken_color, default_activity_types
from .identity import Identity
from .models import (
    Activity,
    ActivityRequest,
    ActivityTypeConfig,
    ActivityTypeRequest,
    Layer,
    LayerRequest,
    UpdateUserSettingsRequest,
    UserSettings,
    WheelModel,
    utc_now,
)
from .storage import QueryOptions, Storage

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Response Models
# ────────────────────────────────────────────────────────────────

class ActivityListResponse(WheelModel):
    activities: List[Activity]
    continuation_token: Optional[str] = None
    total_count: Optional[int] = None


class LayerListResponse(WheelModel):
    layers: List[Layer]


class ActivityTypeListResponse(WheelModel):
    activity_types: List[ActivityTypeConfig]


router = APIRouter(prefix="/api", tags=["wheel"])


def _split_ids(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


async def _require_layer(storage: Storage, organization_id: str, layer_id: str) -> None:
    try:
        await storage.layers.get(organization_id, layer_id)
    except NotFound:
        raise ValidationFailed(f"Unknown layer: {layer_id}") from None


# ============================================================================
# ACTIVITIES
# ============================================================================

@router.get("/activities", response_model=ActivityListResponse)
async def list_activities_endpoint(
    layer_ids: Optional[str] = Query(None, alias="layerIds", description="Comma-separated layer ids"),
    year: Optional[int] = Query(None, ge=1970, le=9999),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    continuation_token: Optional[str] = Query(None, alias="continuationToken"),
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    """
    Without layerIds this pages through every activity of the organization
    (optionally filtered to a year within each page). With layerIds the
    matching activities come back in one list ordered by start date.
    """
    wanted = _split_ids(layer_ids)
    if wanted is not None:
        activities = await storage.activities.list_by_layers(identity.organization_id, wanted, year)
        return ActivityListResponse(activities=activities, total_count=len(activities))

    result = await storage.activities.list(
        identity.organization_id,
        QueryOptions(page_size=page_size, continuation_token=continuation_token),
    )
    items = [a for a in result.items if year is None or a.intersects_year(year)]
    return ActivityListResponse(
        activities=items,
        continuation_token=result.continuation_token,
        total_count=result.total_count,
    )


@router.post("/activities", response_model=Activity, status_code=status.HTTP_201_CREATED)
async def create_activity_endpoint(
    body: ActivityRequest,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    await _require_layer(storage, identity.organization_id, body.scope)
    now = utc_now()
    activity = Activity(
        id=str(uuid.uuid4()),
        organization_id=identity.organization_id,
        created_by=identity.user_id,
        created_at=now,
        updated_at=now,
        **body.model_dump(),
    )
    created = await storage.activities.create(activity)
    logger.info(f"[WHEEL] Activity {created.id} created in layer {created.scope} by {identity.user_id}")
    return created


@router.get("/activities/{activity_id}", response_model=Activity)
async def get_activity_endpoint(
    activity_id: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await storage.activities.get(identity.organization_id, activity_id)


@router.put("/activities/{activity_id}", response_model=Activity)
async def update_activity_endpoint(
    activity_id: str,
    body: ActivityRequest,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    current = await storage.activities.get(identity.organization_id, activity_id)
    if body.scope != current.scope:
        await _require_layer(storage, identity.organization_id, body.scope)
    updated = current.model_copy(update={**body.model_dump(), "updated_at": utc_now()})
    return await storage.activities.update(updated)


@router.delete("/activities/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_activity_endpoint(
    activity_id: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    await storage.activities.delete(identity.organization_id, activity_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# LAYERS
# ============================================================================

@router.get("/layers", response_model=LayerListResponse)
async def list_layers_endpoint(
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    result = await storage.layers.list(identity.organization_id)
    return LayerListResponse(layers=sorted(result.items, key=lambda layer: (layer.ring_index, layer.name)))


@router.post("/layers", response_model=Layer, status_code=status.HTTP_201_CREATED)
async def create_layer_endpoint(
    body: LayerRequest,
    identity: Identity = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    layer = Layer(
        id=str(uuid.uuid4()),
        organization_id=identity.organization_id,
        created_by=identity.user_id,
        created_at=utc_now(),
        **body.model_dump(),
    )
    created = await storage.layers.create(layer)
    logger.info(f"[WHEEL] Layer {created.id} ({created.name}) created by {identity.user_id}")
    return created


@router.put("/layers/{layer_id}", response_model=Layer)
async def update_layer_endpoint(
    layer_id: str,
    body: LayerRequest,
    identity: Identity = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    current = await storage.layers.get(identity.organization_id, layer_id)
    updated = current.model_copy(update={**body.model_dump(), "updated_at": utc_now()})
    return await storage.layers.update(updated)


@router.delete("/layers/{layer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_layer_endpoint(
    layer_id: str,
    identity: Identity = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    await storage.layers.delete(identity.organization_id, layer_id)
    logger.info(f"[WHEEL] Layer {layer_id} deleted by {identity.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# ACTIVITY TYPES
# ============================================================================

async def _seed_activity_types(storage: Storage, organization_id: str) -> None:
    for config in default_activity_types(organization_id):
        try:
            await storage.activity_types.create(config)
        except AlreadyExists:
            continue
    logger.info(f"[WHEEL] Seeded built-in activity types for org {organization_id}")


@router.get("/activity-types", response_model=ActivityTypeListResponse)
async def list_activity_types_endpoint(
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    result = await storage.activity_types.list(identity.organization_id)
    if not any(config.is_system for config in result.items):
        await _seed_activity_types(storage, identity.organization_id)
        result = await storage.activity_types.list(identity.organization_id)
    return ActivityTypeListResponse(
        activity_types=sorted(result.items, key=lambda c: (c.sort_order, c.key))
    )


@router.put("/activity-types/{key}", response_model=ActivityTypeConfig)
async def put_activity_type_endpoint(
    key: str,
    body: ActivityTypeRequest,
    identity: Identity = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    try:
        is_system = (await storage.activity_types.get(identity.organization_id, key)).is_system
    except NotFound:
        is_system = False

    try:
        highlight = body.highlight_color or darken_color(body.color)
    except ValueError as e:
        raise ValidationFailed(str(e)) from None

    config = ActivityTypeConfig(
        key=key,
        label=body.label,
        icon=body.icon,
        color=body.color,
        highlight_color=highlight,
        description=body.description,
        organization_id=identity.organization_id,
        is_system=is_system,
        sort_order=body.sort_order,
    )
    return await storage.activity_types.upsert(config)


@router.delete("/activity-types/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_activity_type_endpoint(
    key: str,
    identity: Identity = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    try:
        config = await storage.activity_types.get(identity.organization_id, key)
    except NotFound:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    if config.is_system:
        raise Unauthorized("Built-in activity types cannot be deleted")
    await storage.activity_types.delete(identity.organization_id, key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# USER SETTINGS
# ============================================================================

@router.get("/user/settings", response_model=UserSettings)
async def get_user_settings_endpoint(
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await storage.user_settings.get(identity.organization_id, identity.user_id)


@router.put("/user/settings", response_model=UserSettings)
async def put_user_settings_endpoint(
    body: UpdateUserSettingsRequest,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    current = await storage.user_settings.get(identity.organization_id, identity.user_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    updated = current.model_copy(update={**changes, "updated_at": utc_now()})
    return await storage.user_settings.upsert(updated)


@router.delete("/user/settings", response_model=UserSettings)
async def reset_user_settings_endpoint(
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    await storage.user_settings.delete(identity.organization_id, identity.user_id)
    return UserSettings.default(identity.organization_id, identity.user_id)
