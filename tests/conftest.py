"""
Pytest configuration and fixtures.

Store fixtures are parametrized over every backend: the in-memory store, and
the table and document stores on a throwaway SQLite file (aiosqlite), so
the contract tests prove the same behaviour on all three.
"""
from datetime import timedelta

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from wheelshare.core.config import Settings
from wheelshare.identity import Identity, TokenValidator
from wheelshare.models import ShareLayerConfig, ShareLink, ShareVisibility, utc_now
from wheelshare.storage.document import open_document_storage
from wheelshare.storage.memory import build_memory_storage
from wheelshare.storage.table import open_table_storage

TEST_BASE_URL = "https://wheel.example.com"
ORG_A = "org-a"
ORG_B = "org-b"

MEMBER_A = Identity(user_id="user-a", organization_id=ORG_A, display_name="Ada", email="ada@a.example")
ADMIN_A = Identity(
    user_id="admin-a", organization_id=ORG_A, is_admin=True, roles=["admin.write"]
)
MEMBER_B = Identity(user_id="user-b", organization_id=ORG_B)

BACKENDS = ["memory", "table", "document"]


async def open_backend(name: str, tmp_path):
    if name == "memory":
        return build_memory_storage()
    if name == "table":
        return await open_table_storage(
            f"sqlite+aiosqlite:///{tmp_path / 'table.db'}", timeout=10.0, increment_max_attempts=50
        )
    return await open_document_storage(f"sqlite+aiosqlite:///{tmp_path / 'document.db'}", timeout=10.0)


@pytest.fixture(params=BACKENDS)
async def storage(request, tmp_path):
    """A fresh, empty store for each backend."""
    store = await open_backend(request.param, tmp_path)
    yield store
    await store.close()


@pytest.fixture
async def memory_storage():
    store = build_memory_storage()
    yield store
    await store.close()


def make_share(
    organization_id: str = ORG_A,
    share_id: str = "share-1",
    short_code: str = "AbCdEf23",
    share_key: str = "ab" * 32,
    visibility: ShareVisibility = ShareVisibility.PUBLIC,
    expires_in: timedelta = timedelta(days=365),
    **overrides,
) -> ShareLink:
    now = utc_now().replace(microsecond=0)
    fields = dict(
        id=share_id,
        share_key=share_key,
        short_code=short_code,
        visibility=visibility,
        organization_id=organization_id,
        created_by="user-a",
        created_at=now,
        expires_at=now + expires_in,
        name="Q3 plan",
        layer_config=ShareLayerConfig(layer_ids=["layer-1", "layer-2"]),
    )
    fields.update(overrides)
    return ShareLink(**fields)


# ────────────────────────────────────────────────────────────────
# HTTP client
# ────────────────────────────────────────────────────────────────

class FakeAuth:
    """Stands in for get_identity; tests switch the caller by assigning .identity."""

    def __init__(self, identity: Identity = MEMBER_A):
        self.identity = identity

    async def __call__(self) -> Identity:
        return self.identity


@pytest.fixture
def settings():
    return Settings(
        storage_type="memory",
        base_url=TEST_BASE_URL,
        public_access_rate_limit=1000,
        auth_client_id="test-client",
    )


@pytest.fixture
def auth():
    return FakeAuth()


def _no_keys(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"keys": []})


@pytest.fixture
async def client(settings, memory_storage, auth):
    """
    AsyncClient against the app with the memory store and a switchable caller.

    Startup hooks do not run under ASGITransport, so app.state is filled here.
    """
    from wheelshare.core.request_context import get_identity
    from wheelshare.main import app
    from wheelshare.rate_limiter import clear_rate_limits

    app.state.settings = settings
    app.state.storage = memory_storage
    app.state.token_validator = TokenValidator(
        client_id=settings.auth_client_id,
        jwks_url="https://keys.test/discovery/keys",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_no_keys)),
    )
    app.dependency_overrides[get_identity] = auth
    clear_rate_limits()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    clear_rate_limits()
