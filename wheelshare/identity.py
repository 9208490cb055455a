"""
Identity Resolution - JWT Verification against the tenant's JWKS

This module turns a bearer token from the identity provider into an
`Identity` the rest of the app trusts. It handles:
- Fetching (and caching) the issuer's public signing keys with httpx
- Verifying the RS256 signature, expiry, not-before and audience
- Checking the issuer starts with the configured prefix
- Mapping provider claims onto our identity fields

Claim mapping:
    oid                       -> user_id
    tid                       -> organization_id
    name                      -> display_name
    preferred_username | upn  -> email
    roles                     -> roles (is_admin when the admin role is present)

There is no unverified mode. Tests sign their own tokens and serve the
matching JWKS through an httpx mock transport.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import jwt
from jwt import PyJWK

from .core.config import Settings
from .core.responses import ErrorCodes

logger = logging.getLogger(__name__)

JWKS_CACHE_SECONDS = 3600
# An unknown kid forces a refetch at most this often
MIN_FORCED_REFRESH_SECONDS = 60


@dataclass
class Identity:
    """The verified caller. organization_id is the tenant boundary for every request."""

    user_id: str
    organization_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False
    roles: List[str] = field(default_factory=list)


# ============================================================================
# ERRORS
# ============================================================================

class AuthError(Exception):
    """Raised when a credential cannot be turned into an Identity. Rendered as 401."""

    code = ErrorCodes.INVALID_TOKEN

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MissingCredential(AuthError):
    code = ErrorCodes.AUTHENTICATION_REQUIRED


class MalformedCredential(AuthError):
    pass


class CredentialValidationFailed(AuthError):
    pass


class CredentialExpired(AuthError):
    code = ErrorCodes.TOKEN_EXPIRED


class InvalidAudience(AuthError):
    pass


class InvalidIssuer(AuthError):
    pass


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise MissingCredential("Missing Authorization header")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise MalformedCredential("Invalid Authorization header format. Use: Bearer <token>")
    return parts[1]


def identity_from_claims(claims: Dict[str, Any], admin_role: str) -> Identity:
    user_id = claims.get("oid")
    organization_id = claims.get("tid")
    if not user_id or not organization_id:
        raise CredentialValidationFailed("Token is missing the oid or tid claim")

    roles = claims.get("roles") or []
    if not isinstance(roles, list):
        roles = [roles]
    return Identity(
        user_id=user_id,
        organization_id=organization_id,
        display_name=claims.get("name"),
        email=claims.get("preferred_username") or claims.get("upn"),
        is_admin=admin_role in roles,
        roles=roles,
    )


class TokenValidator:
    """
    Verifies bearer tokens for one application registration.

    One instance lives on app.state for the whole process; it owns the JWKS
    cache and refreshes it once when a token names an unknown key id (key
    rotation), but never more often than MIN_FORCED_REFRESH_SECONDS.
    """

    def __init__(
        self,
        client_id: str,
        jwks_url: str,
        issuer_prefix: str = "https://login.microsoftonline.com/",
        admin_role: str = "admin.write",
        http_client: Optional[httpx.AsyncClient] = None,
        leeway: int = 60,
    ):
        self.client_id = client_id
        self.jwks_url = jwks_url
        self.issuer_prefix = issuer_prefix
        self.admin_role = admin_role
        self.leeway = leeway
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._owns_client = http_client is None
        self._jwks: Optional[Dict[str, Any]] = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenValidator":
        return cls(
            client_id=settings.auth_client_id,
            jwks_url=settings.jwks_url,
            issuer_prefix=settings.auth_issuer_prefix,
            admin_role=settings.auth_admin_role,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _fetch_jwks(self, force: bool = False) -> Dict[str, Any]:
        async with self._lock:
            age = time.monotonic() - self._fetched_at
            if self._jwks is not None:
                if age < JWKS_CACHE_SECONDS and not force:
                    return self._jwks
                if force and age < MIN_FORCED_REFRESH_SECONDS:
                    return self._jwks
            try:
                response = await self._http.get(self.jwks_url)
                response.raise_for_status()
                self._jwks = response.json()
            except httpx.HTTPError as e:
                logger.error(f"[AUTH] Failed to fetch JWKS from {self.jwks_url}: {e}")
                raise CredentialValidationFailed("Unable to fetch signing keys") from e
            self._fetched_at = time.monotonic()
            logger.info(f"[AUTH] Loaded {len(self._jwks.get('keys', []))} signing keys")
            return self._jwks

    async def _signing_key(self, kid: str):
        for force in (False, True):
            jwks = await self._fetch_jwks(force=force)
            for key in jwks.get("keys", []):
                if key.get("kid") == kid:
                    try:
                        return PyJWK.from_dict(key).key
                    except (jwt.PyJWKError, jwt.InvalidKeyError) as e:
                        raise CredentialValidationFailed(f"Unusable signing key {kid}") from e
        return None

    async def validate(self, authorization: Optional[str]) -> Identity:
        token = extract_bearer_token(authorization)

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise MalformedCredential("Token is not a valid JWT") from e
        kid = header.get("kid")
        if not kid:
            raise MalformedCredential("Token header missing key ID (kid)")

        signing_key = await self._signing_key(kid)
        if signing_key is None:
            logger.warning(f"[AUTH] No signing key matches kid {kid}")
            raise CredentialValidationFailed(f"No matching key found for kid: {kid}")

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self.client_id,
                leeway=self.leeway,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise CredentialExpired("Token has expired") from e
        except jwt.InvalidAudienceError as e:
            raise InvalidAudience("Token was not issued for this application") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"[AUTH] Token verification failed: {e}")
            raise CredentialValidationFailed("Invalid token") from e

        if not str(claims.get("iss", "")).startswith(self.issuer_prefix):
            raise InvalidIssuer("Token issuer is not trusted")

        identity = identity_from_claims(claims, self.admin_role)
        logger.debug(f"[AUTH] Authenticated {identity.user_id} in {identity.organization_id}")
        return identity
