"""
Share management routes.

All routes need an authenticated member; every lookup is scoped to the
caller's organization, so another organization's share id answers 404.

    POST   /api/shares                       -> create
    GET    /api/shares                       -> list (visibility, isActive, pageSize, continuationToken)
    GET    /api/shares/{id}                  -> get
    PATCH  /api/shares/{id}                  -> update / deactivate
    DELETE /api/shares/{id}                  -> delete (idempotent)
    POST   /api/shares/{id}/renew            -> extend expiry by a year
    POST   /api/shares/{id}/regenerate-key   -> new key, same short code
    GET    /api/s/{shortCode}                -> members-only access by short code
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from . import share_access
from .core.request_context import get_identity, get_storage
from .identity import Identity
from .models import (
    AccessShareResponse,
    CreateShareRequest,
    CreateShareResponse,
    ListSharesResponse,
    ShareLink,
    ShareVisibility,
    UpdateShareRequest,
)
from .storage import QueryOptions, Storage

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Router Definition
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/api", tags=["shares"])


def _base_url(request: Request) -> str:
    return request.app.state.settings.base_url


@router.post("/shares", response_model=CreateShareResponse, status_code=status.HTTP_201_CREATED)
async def create_share_endpoint(
    body: CreateShareRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    """
    Create a share link for a filtered view of the wheel.

    Returns the share plus ready-to-use URL and iframe embed code. For public
    shares the URL carries the key (?k=...); treat it like a password.
    """
    share = await share_access.create_share(storage, identity, body)
    base_url = _base_url(request)
    return CreateShareResponse(
        share=share,
        share_url=share_access.build_share_url(base_url, share),
        embed_code=share_access.build_embed_code(base_url, share),
    )


@router.get("/shares", response_model=ListSharesResponse)
async def list_shares_endpoint(
    visibility: Optional[ShareVisibility] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    continuation_token: Optional[str] = Query(None, alias="continuationToken"),
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    result = await share_access.list_shares(
        storage,
        identity,
        QueryOptions(page_size=page_size, continuation_token=continuation_token),
        visibility=visibility,
        is_active=is_active,
    )
    return ListSharesResponse(
        shares=result.items,
        continuation_token=result.continuation_token,
        total_count=result.total_count,
    )


@router.get("/shares/{share_id}", response_model=ShareLink)
async def get_share_endpoint(
    share_id: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await share_access.get_share(storage, identity, share_id)


@router.patch("/shares/{share_id}", response_model=ShareLink)
async def update_share_endpoint(
    share_id: str,
    body: UpdateShareRequest,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await share_access.update_share(storage, identity, share_id, body)


@router.delete("/shares/{share_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_share_endpoint(
    share_id: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    await share_access.delete_share(storage, identity, share_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/shares/{share_id}/renew", response_model=ShareLink)
async def renew_share_endpoint(
    share_id: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await share_access.renew_share(storage, identity, share_id)


@router.post("/shares/{share_id}/regenerate-key", response_model=CreateShareResponse)
async def regenerate_key_endpoint(
    share_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    """Previously distributed public URLs and embeds stop working immediately."""
    share = await share_access.regenerate_share_key(storage, identity, share_id)
    base_url = _base_url(request)
    return CreateShareResponse(
        share=share,
        share_url=share_access.build_share_url(base_url, share),
        embed_code=share_access.build_embed_code(base_url, share),
    )


@router.get("/s/{short_code}", response_model=AccessShareResponse, response_model_exclude_none=True)
async def access_members_share_endpoint(
    short_code: str,
    identity: Identity = Depends(get_identity),
    storage: Storage = Depends(get_storage),
):
    return await share_access.access_authenticated_share(storage, identity, short_code)
