"""
Request Context Resolution Module

The single place routes get their caller from. Every authenticated route
depends on `get_identity` (or `require_admin`); nothing reads auth headers
directly.

AUTH METHOD:
    - JWT Bearer token verified by the TokenValidator on app.state
    - NO fallback to headers or dev users
"""

import logging
from typing import Optional

from fastapi import Depends, Header, Request

from ..identity import Identity
from ..storage import Storage

logger = logging.getLogger(__name__)


class AuthorizationError(Exception):
    """Raised when an authenticated caller lacks a required role. Rendered as 403."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def get_storage(request: Request) -> Storage:
    """The process-wide store bundle built at startup."""
    return request.app.state.storage


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    """
    Verify the bearer token and return the caller.

    Raises an AuthError subclass (rendered as 401) when the credential is
    missing, malformed, expired or issued for someone else.
    """
    validator = request.app.state.token_validator
    return await validator.validate(authorization)


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        logger.warning(f"[AUTH] {identity.user_id} attempted an admin operation without the admin role")
        raise AuthorizationError("Admin role required")
    return identity
