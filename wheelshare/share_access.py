"""
Share Access Engine

Owns the share link lifecycle and the public access check.

Lifecycle (authenticated, always scoped to the caller's organization):
    create_share          - validate, mint key + short code, store
    list_shares / get_share / update_share / delete_share
    renew_share           - expires_at = now + 365 days, stamps renewed_at
    regenerate_share_key  - new key, same short code; old URLs stop working

Access check for a presented (short_code, key), evaluated strictly in order:

    Malformed -> NotFound -> KeyMismatch -> Deactivated -> Expired -> Valid

Callers only ever see "Invalid share code", "Invalid share key",
"Share has been deactivated" or "Share has expired"; an unknown short code
reads exactly like a malformed one. Only a Valid share counts a view and
returns data, and the activities are projected to ShareActivity so no audit
or ownership fields leave the organization.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from html import escape
from typing import Optional

from .core.errors import AlreadyExists, NotFound, ShortCodeTaken, ValidationFailed
from .crypto import (
    generate_share_key,
    generate_short_code,
    is_valid_share_key,
    is_valid_short_code,
    secure_compare,
)
from .identity import Identity
from .models import (
    DEFAULT_WHEEL_TITLE,
    SHARE_LIFETIME,
    AccessShareResponse,
    CreateShareRequest,
    ShareAccessConfig,
    ShareActivity,
    ShareLayerConfig,
    ShareLink,
    ShareViewSettings,
    ShareVisibility,
    UpdateShareRequest,
    utc_now,
)
from .storage import QueryOptions, QueryResult, Storage

logger = logging.getLogger(__name__)

MAX_LAYERS = 100
MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
SHORT_CODE_ATTEMPTS = 5
ORGANIZATION_NAME = "Organization"


class AccessOutcome(str, Enum):
    MALFORMED_CODE = "malformed_code"
    MALFORMED_KEY = "malformed_key"
    NOT_FOUND = "not_found"
    KEY_MISMATCH = "key_mismatch"
    FORBIDDEN = "forbidden"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    VALID = "valid"


OUTCOME_MESSAGES = {
    AccessOutcome.MALFORMED_CODE: "Invalid share code",
    AccessOutcome.NOT_FOUND: "Invalid share code",
    AccessOutcome.MALFORMED_KEY: "Invalid share key",
    AccessOutcome.KEY_MISMATCH: "Invalid share key",
    AccessOutcome.FORBIDDEN: "Access denied",
    AccessOutcome.DEACTIVATED: "Share has been deactivated",
    AccessOutcome.EXPIRED: "Share has expired",
}


# ============================================================================
# VALIDATION
# ============================================================================

def validate_share_fields(
    layer_config: ShareLayerConfig,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> None:
    """Reject bad input on the first violated limit, before anything is written."""
    if not layer_config.layer_ids:
        raise ValidationFailed("At least one layer must be selected")
    if len(layer_config.layer_ids) > MAX_LAYERS:
        raise ValidationFailed(f"Too many layers selected (max {MAX_LAYERS})")
    if name is not None and len(name) > MAX_NAME_LENGTH:
        raise ValidationFailed(f"Name too long (max {MAX_NAME_LENGTH} characters)")
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationFailed(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")


# ============================================================================
# LINKS
# ============================================================================

def build_share_url(base_url: str, share: ShareLink) -> str:
    base = base_url.rstrip("/")
    if share.visibility == ShareVisibility.PUBLIC:
        return f"{base}/s/{share.short_code}?k={share.share_key}"
    return f"{base}/s/{share.short_code}"


def build_embed_code(base_url: str, share: ShareLink) -> str:
    base = base_url.rstrip("/")
    src = f"{base}/embed/{share.short_code}"
    if share.visibility == ShareVisibility.PUBLIC:
        src += f"?k={share.share_key}"
    title = escape(share.name or DEFAULT_WHEEL_TITLE, quote=True)
    return f'<iframe src="{src}" width="600" height="600" frameborder="0" title="{title}"></iframe>'


# ============================================================================
# LIFECYCLE
# ============================================================================

async def create_share(storage: Storage, identity: Identity, request: CreateShareRequest) -> ShareLink:
    validate_share_fields(request.layer_config, request.name, request.description)

    now = utc_now()
    share_id = str(uuid.uuid4())
    share_key = generate_share_key()

    for attempt in range(1, SHORT_CODE_ATTEMPTS + 1):
        share = ShareLink(
            id=share_id,
            share_key=share_key,
            short_code=generate_short_code(),
            visibility=request.visibility,
            organization_id=identity.organization_id,
            created_by=identity.user_id,
            created_at=now,
            expires_at=now + SHARE_LIFETIME,
            name=request.name,
            description=request.description,
            layer_config=request.layer_config,
            view_settings=request.view_settings or ShareViewSettings(),
        )
        try:
            created = await storage.shares.create(share)
        except ShortCodeTaken:
            logger.warning(
                f"[SHARE] Short code collision on attempt {attempt}/{SHORT_CODE_ATTEMPTS} "
                f"for org {identity.organization_id}"
            )
            continue
        logger.info(
            f"[SHARE] Created {created.visibility.value} share {created.id} ({created.short_code}) "
            f"in org {created.organization_id} by {created.created_by}"
        )
        return created

    logger.error(f"[SHARE] Gave up allocating a short code after {SHORT_CODE_ATTEMPTS} attempts")
    raise AlreadyExists("Could not allocate a unique short code")


async def list_shares(
    storage: Storage,
    identity: Identity,
    options: Optional[QueryOptions] = None,
    visibility: Optional[ShareVisibility] = None,
    is_active: Optional[bool] = None,
) -> QueryResult[ShareLink]:
    """
    One page of the organization's shares, newest first within the page.

    The visibility/is_active filters apply to the page the store returned,
    so a filtered page can be shorter than page_size.
    """
    result = await storage.shares.list(identity.organization_id, options)
    items = [
        s for s in result.items
        if (visibility is None or s.visibility == visibility)
        and (is_active is None or s.is_active == is_active)
    ]
    items.sort(key=lambda s: s.created_at, reverse=True)
    return QueryResult(items=items, continuation_token=result.continuation_token, total_count=result.total_count)


async def get_share(storage: Storage, identity: Identity, share_id: str) -> ShareLink:
    return await storage.shares.get(identity.organization_id, share_id)


async def update_share(
    storage: Storage, identity: Identity, share_id: str, request: UpdateShareRequest
) -> ShareLink:
    share = await storage.shares.get(identity.organization_id, share_id)
    # An explicit null clears name/description; the other fields are not nullable
    changes = request.model_dump(exclude_unset=True)
    if "name" in changes:
        share.name = request.name
    if "description" in changes:
        share.description = request.description
    if request.layer_config is not None:
        share.layer_config = request.layer_config
    if request.view_settings is not None:
        share.view_settings = request.view_settings
    if request.is_active is not None:
        if request.is_active and not share.is_active:
            raise ValidationFailed("A deactivated share cannot be reactivated")
        share.is_active = request.is_active

    validate_share_fields(share.layer_config, share.name, share.description)
    updated = await storage.shares.update(share)
    logger.info(f"[SHARE] Updated share {share_id} in org {identity.organization_id}: {sorted(changes)}")
    return updated


async def delete_share(storage: Storage, identity: Identity, share_id: str) -> None:
    await storage.shares.delete(identity.organization_id, share_id)
    logger.info(f"[SHARE] Deleted share {share_id} in org {identity.organization_id}")


async def renew_share(storage: Storage, identity: Identity, share_id: str) -> ShareLink:
    share = await storage.shares.get(identity.organization_id, share_id)
    now = utc_now()
    share.expires_at = now + SHARE_LIFETIME
    share.renewed_at = now
    renewed = await storage.shares.update(share)
    logger.info(f"[SHARE] Renewed share {share_id} until {renewed.expires_at.isoformat()}")
    return renewed


async def regenerate_share_key(storage: Storage, identity: Identity, share_id: str) -> ShareLink:
    share = await storage.shares.get(identity.organization_id, share_id)
    share.share_key = generate_share_key()
    updated = await storage.shares.update(share)
    logger.info(f"[SHARE] Regenerated key for share {share_id} ({updated.short_code})")
    return updated


# ============================================================================
# ACCESS
# ============================================================================

def evaluate_share(share: ShareLink, presented_key: Optional[str], now: Optional[datetime] = None) -> AccessOutcome:
    """
    The checks that follow a successful lookup, in order.

    presented_key=None skips the key check (authenticated users access).
    """
    if presented_key is not None and not secure_compare(presented_key, share.share_key):
        return AccessOutcome.KEY_MISMATCH
    if not share.is_active:
        return AccessOutcome.DEACTIVATED
    if share.is_expired(now):
        return AccessOutcome.EXPIRED
    return AccessOutcome.VALID


def _denied(outcome: AccessOutcome, short_code: str) -> AccessShareResponse:
    logger.info(f"[SHARE_ACCESS] Denied {short_code!r}: {outcome.value}")
    return AccessShareResponse(success=False, error=OUTCOME_MESSAGES[outcome])


async def _record_view(storage: Storage, share: ShareLink) -> None:
    try:
        await storage.shares.increment_views(share.organization_id, share.id)
    except Exception as e:
        # View counting never fails the request
        logger.warning(f"[SHARE_ACCESS] Could not record view for {share.short_code}: {e}")


async def _share_view(storage: Storage, share: ShareLink, now: datetime) -> AccessShareResponse:
    await _record_view(storage, share)

    year = share.layer_config.year or now.year
    activities = await storage.activities.list_by_layers(
        share.organization_id, share.layer_config.layer_ids, year
    )
    logger.info(f"[SHARE_ACCESS] Served {share.short_code} ({len(activities)} activities, {year})")
    return AccessShareResponse(
        success=True,
        config=ShareAccessConfig(
            layers=share.layer_config,
            view_settings=share.view_settings,
            organization_name=ORGANIZATION_NAME,
            title=share.title,
        ),
        activities=[ShareActivity.from_activity(a) for a in activities],
    )


async def access_public_share(
    storage: Storage, short_code: str, key: Optional[str], now: Optional[datetime] = None
) -> AccessShareResponse:
    """Anonymous access by (short_code, key). Storage faults propagate; everything else is a 200 answer."""
    now = now or utc_now()
    if not is_valid_short_code(short_code):
        return _denied(AccessOutcome.MALFORMED_CODE, short_code)
    if not key or not is_valid_share_key(key):
        return _denied(AccessOutcome.MALFORMED_KEY, short_code)

    try:
        share = await storage.shares.get_by_short_code(short_code)
    except NotFound:
        return _denied(AccessOutcome.NOT_FOUND, short_code)

    outcome = evaluate_share(share, key, now)
    if outcome != AccessOutcome.VALID:
        return _denied(outcome, short_code)
    return await _share_view(storage, share, now)


async def access_authenticated_share(
    storage: Storage, identity: Identity, short_code: str, now: Optional[datetime] = None
) -> AccessShareResponse:
    """Access by short code alone, for members of the owning organization."""
    now = now or utc_now()
    if not is_valid_short_code(short_code):
        return _denied(AccessOutcome.MALFORMED_CODE, short_code)

    try:
        share = await storage.shares.get_by_short_code(short_code)
    except NotFound:
        return _denied(AccessOutcome.NOT_FOUND, short_code)

    if share.organization_id != identity.organization_id:
        return _denied(AccessOutcome.FORBIDDEN, short_code)

    outcome = evaluate_share(share, None, now)
    if outcome != AccessOutcome.VALID:
        return _denied(outcome, short_code)
    return await _share_view(storage, share, now)
