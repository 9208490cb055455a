"""
Public share access.

    GET /api/public/s/{shortCode}?k={shareKey}

No authentication; the share key is the credential. Every protocol outcome
(bad code, bad key, deactivated, expired, success) is a 200 with
{"success": ...} so the viewer renders the message itself. Throttled per IP.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from .core.request_context import get_storage
from .models import AccessShareResponse
from .rate_limiter import public_access_rate_limit
from .share_access import access_public_share
from .storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/public", tags=["public-share"])


@router.get(
    "/s/{short_code}",
    response_model=AccessShareResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(public_access_rate_limit)],
)
async def access_public_share_endpoint(
    short_code: str,
    k: Optional[str] = Query(None, description="Share key from the share URL"),
    storage: Storage = Depends(get_storage),
):
    return await access_public_share(storage, short_code, k)
