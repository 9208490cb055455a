"""
Bearer token verification.

Tokens are signed with a throwaway RSA key; the matching JWKS is served by an
httpx MockTransport so no request leaves the process.
"""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from wheelshare.identity import (
    MIN_FORCED_REFRESH_SECONDS,
    CredentialExpired,
    CredentialValidationFailed,
    InvalidAudience,
    InvalidIssuer,
    MalformedCredential,
    MissingCredential,
    TokenValidator,
    extract_bearer_token,
    identity_from_claims,
)

CLIENT_ID = "wheel-api"
JWKS_URL = "https://login.example.com/common/discovery/v2.0/keys"
ISSUER = "https://login.microsoftonline.com/tenant-a/v2.0"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks(signing_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk.update(kid="key-1", alg="RS256", use="sig")
    return {"keys": [jwk]}


class JwksServer:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        assert str(request.url) == JWKS_URL
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def server(jwks):
    return JwksServer(jwks)


@pytest.fixture
def validator(server):
    return TokenValidator(
        client_id=CLIENT_ID,
        jwks_url=JWKS_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
    )


def sign(signing_key, kid="key-1", **overrides) -> str:
    now = int(time.time())
    claims = {
        "oid": "user-1",
        "tid": "tenant-a",
        "name": "Ada Lovelace",
        "preferred_username": "ada@tenant-a.example",
        "roles": ["reader"],
        "aud": CLIENT_ID,
        "iss": ISSUER,
        "iat": now,
        "nbf": now,
        "exp": now + 600,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, signing_key, algorithm="RS256", headers={"kid": kid} if kid else None)


def bearer(token: str) -> str:
    return f"Bearer {token}"


class TestHeaderParsing:

    def test_missing(self):
        with pytest.raises(MissingCredential):
            extract_bearer_token(None)
        with pytest.raises(MissingCredential):
            extract_bearer_token("")

    @pytest.mark.parametrize("value", ["Basic abc", "Bearer", "Bearer a b", "token-only"])
    def test_malformed(self, value):
        with pytest.raises(MalformedCredential):
            extract_bearer_token(value)

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer_token("bearer abc.def.ghi") == "abc.def.ghi"


class TestClaimMapping:

    def test_maps_provider_claims(self):
        identity = identity_from_claims(
            {"oid": "u", "tid": "t", "name": "N", "upn": "n@t.example", "roles": ["admin.write"]},
            admin_role="admin.write",
        )
        assert identity.user_id == "u"
        assert identity.organization_id == "t"
        assert identity.display_name == "N"
        assert identity.email == "n@t.example"
        assert identity.is_admin is True

    def test_preferred_username_wins_over_upn(self):
        identity = identity_from_claims(
            {"oid": "u", "tid": "t", "preferred_username": "p@t", "upn": "u@t"}, admin_role="admin.write"
        )
        assert identity.email == "p@t"
        assert identity.roles == []
        assert identity.is_admin is False

    def test_requires_oid_and_tid(self):
        with pytest.raises(CredentialValidationFailed):
            identity_from_claims({"oid": "u"}, admin_role="admin.write")


class TestTokenValidator:

    @pytest.mark.asyncio
    async def test_valid_token(self, validator, signing_key):
        identity = await validator.validate(bearer(sign(signing_key)))

        assert identity.user_id == "user-1"
        assert identity.organization_id == "tenant-a"
        assert identity.email == "ada@tenant-a.example"
        assert identity.is_admin is False

    @pytest.mark.asyncio
    async def test_admin_role(self, validator, signing_key):
        identity = await validator.validate(bearer(sign(signing_key, roles=["reader", "admin.write"])))
        assert identity.is_admin is True

    @pytest.mark.asyncio
    async def test_keys_are_cached(self, validator, signing_key, server):
        await validator.validate(bearer(sign(signing_key)))
        await validator.validate(bearer(sign(signing_key, oid="user-2")))
        assert server.calls == 1

    @pytest.mark.asyncio
    async def test_expired_beyond_leeway(self, validator, signing_key):
        past = int(time.time()) - 3600
        with pytest.raises(CredentialExpired):
            await validator.validate(bearer(sign(signing_key, iat=past - 600, nbf=past - 600, exp=past)))

    @pytest.mark.asyncio
    async def test_expired_within_leeway_is_accepted(self, validator, signing_key):
        just_now = int(time.time()) - 10
        identity = await validator.validate(bearer(sign(signing_key, exp=just_now, nbf=just_now - 60)))
        assert identity.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_wrong_audience(self, validator, signing_key):
        with pytest.raises(InvalidAudience):
            await validator.validate(bearer(sign(signing_key, aud="some-other-app")))

    @pytest.mark.asyncio
    async def test_untrusted_issuer(self, validator, signing_key):
        with pytest.raises(InvalidIssuer):
            await validator.validate(bearer(sign(signing_key, iss="https://evil.example/tenant-a")))

    @pytest.mark.asyncio
    async def test_missing_exp(self, validator, signing_key):
        with pytest.raises(CredentialValidationFailed):
            await validator.validate(bearer(sign(signing_key, exp=None)))

    @pytest.mark.asyncio
    async def test_missing_kid(self, validator, signing_key):
        with pytest.raises(MalformedCredential):
            await validator.validate(bearer(sign(signing_key, kid=None)))

    @pytest.mark.asyncio
    async def test_not_a_jwt(self, validator):
        with pytest.raises(MalformedCredential):
            await validator.validate("Bearer not-a-jwt")

    @pytest.mark.asyncio
    async def test_unknown_kid_right_after_a_fetch_does_not_refetch(self, validator, signing_key, server):
        with pytest.raises(CredentialValidationFailed):
            await validator.validate(bearer(sign(signing_key, kid="rotated-key")))
        assert server.calls == 1

    @pytest.mark.asyncio
    async def test_repeated_unknown_kids_are_throttled(self, validator, signing_key, server):
        await validator.validate(bearer(sign(signing_key)))
        for i in range(5):
            with pytest.raises(CredentialValidationFailed):
                await validator.validate(bearer(sign(signing_key, kid=f"bogus-{i}")))
        assert server.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_once_after_the_minimum_interval(self, validator, signing_key, server, jwks):
        await validator.validate(bearer(sign(signing_key)))
        validator._fetched_at -= MIN_FORCED_REFRESH_SECONDS + 1
        server.body = {"keys": jwks["keys"] + [dict(jwks["keys"][0], kid="rotated-key")]}

        identity = await validator.validate(bearer(sign(signing_key, kid="rotated-key")))

        assert identity.user_id == "user-1"
        assert server.calls == 2
        with pytest.raises(CredentialValidationFailed):
            await validator.validate(bearer(sign(signing_key, kid="still-unknown")))
        assert server.calls == 2

    @pytest.mark.asyncio
    async def test_signature_from_another_key(self, validator):
        stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(CredentialValidationFailed):
            await validator.validate(bearer(sign(stranger)))

    @pytest.mark.asyncio
    async def test_jwks_outage(self, signing_key):
        validator = TokenValidator(
            client_id=CLIENT_ID,
            jwks_url=JWKS_URL,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(JwksServer({}, status_code=503))),
        )
        with pytest.raises(CredentialValidationFailed):
            await validator.validate(bearer(sign(signing_key)))
