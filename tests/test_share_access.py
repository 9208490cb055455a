"""
Share access engine: lifecycle, the access state machine, and the five
end-to-end scenarios, against every backend.

Run with: pytest tests/test_share_access.py -v
"""

import dataclasses
import re
from datetime import datetime, timedelta, timezone

import pytest

from wheelshare import share_access
from wheelshare.core.errors import AlreadyExists, NotFound, ShortCodeTaken, ValidationFailed
from wheelshare.crypto import secure_compare
from wheelshare.models import (
    Activity,
    CreateShareRequest,
    ShareLayerConfig,
    ShareViewSettings,
    ShareVisibility,
    UpdateShareRequest,
    utc_now,
)
from wheelshare.share_access import AccessOutcome, evaluate_share

from .conftest import MEMBER_A, MEMBER_B, ORG_A, TEST_BASE_URL, make_share

PUBLIC_URL_RE = re.compile(
    re.escape(TEST_BASE_URL) + r"/s/([A-HJ-NP-Za-hj-km-np-z2-9]{8})\?k=([0-9a-f]{64})"
)


def public_request(layer_ids=("layer-1", "layer-2"), **kwargs) -> CreateShareRequest:
    return CreateShareRequest(
        visibility=kwargs.pop("visibility", ShareVisibility.PUBLIC),
        layer_config=ShareLayerConfig(layer_ids=list(layer_ids), year=kwargs.pop("year", None)),
        **kwargs,
    )


async def add_activity(storage, activity_id, scope, start, end, org=ORG_A):
    await storage.activities.create(
        Activity(
            id=activity_id,
            title=f"Activity {activity_id}",
            start_date=start,
            end_date=end,
            color="#D13438",
            highlight_color="#7d1f22",
            description="Internal planning notes",
            scope=scope,
            organization_id=org,
            created_by="user-a",
            created_at=utc_now(),
        )
    )


class RecordingShareStore:
    """Wraps a share store and records every call that reaches it."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def __getattr__(self, name):
        target = getattr(self.inner, name)

        async def recorded(*args, **kwargs):
            self.calls.append(name)
            return await target(*args, **kwargs)

        return recorded


# ────────────────────────────────────────────────────────────────
# End-to-end scenarios
# ────────────────────────────────────────────────────────────────

class TestScenarios:

    @pytest.mark.asyncio
    async def test_create_public_share_returns_keyed_url(self, storage):
        share = await share_access.create_share(storage, MEMBER_A, public_request())

        url = share_access.build_share_url(TEST_BASE_URL, share)
        match = PUBLIC_URL_RE.fullmatch(url)
        assert match is not None
        assert match.group(1) == share.short_code
        assert match.group(2) == share.share_key
        assert share.layer_config.layer_ids == ["layer-1", "layer-2"]
        assert share.organization_id == ORG_A
        assert share.created_by == MEMBER_A.user_id

    @pytest.mark.asyncio
    async def test_wrong_key_is_rejected_without_side_effects(self, storage):
        share = await share_access.create_share(storage, MEMBER_A, public_request())
        wrong_key = ("0" if share.share_key[0] != "0" else "1") + share.share_key[1:]

        response = await share_access.access_public_share(storage, share.short_code, wrong_key)

        assert response.success is False
        assert response.error == "Invalid share key"
        assert response.activities is None
        assert response.config is None
        assert (await storage.shares.get(ORG_A, share.id)).stats.view_count == 0

    @pytest.mark.asyncio
    async def test_expired_share_is_rejected(self, storage):
        share = await storage.shares.create(make_share(expires_in=timedelta(days=-1)))

        response = await share_access.access_public_share(storage, share.short_code, share.share_key)

        assert response.success is False
        assert response.error == "Share has expired"

    @pytest.mark.asyncio
    async def test_regenerate_key_invalidates_old_key_and_keeps_code(self, storage):
        share = await share_access.create_share(storage, MEMBER_A, public_request())

        regenerated = await share_access.regenerate_share_key(storage, MEMBER_A, share.id)

        assert regenerated.short_code == share.short_code
        assert not secure_compare(share.share_key, regenerated.share_key)
        assert secure_compare(regenerated.share_key, (await storage.shares.get(ORG_A, share.id)).share_key)

        old = await share_access.access_public_share(storage, share.short_code, share.share_key)
        new = await share_access.access_public_share(storage, share.short_code, regenerated.share_key)
        assert old.error == "Invalid share key"
        assert new.success is True

    @pytest.mark.asyncio
    async def test_101_layers_rejected_before_any_write(self, storage):
        recorder = RecordingShareStore(storage.shares)
        spied = dataclasses.replace(storage, shares=recorder)

        with pytest.raises(ValidationFailed, match=r"Too many layers selected \(max 100\)"):
            await share_access.create_share(
                spied, MEMBER_A, public_request(layer_ids=[f"layer-{i}" for i in range(101)])
            )

        assert recorder.calls == []
        assert (await storage.shares.list(ORG_A)).items == []


# ────────────────────────────────────────────────────────────────
# Creation rules
# ────────────────────────────────────────────────────────────────

class TestCreateShare:

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"layer_ids": []}, "At least one layer must be selected"),
            ({"name": "x" * 201}, r"Name too long \(max 200 characters\)"),
            ({"description": "x" * 2001}, r"Description too long \(max 2000 characters\)"),
        ],
    )
    @pytest.mark.asyncio
    async def test_limits(self, memory_storage, kwargs, message):
        with pytest.raises(ValidationFailed, match=message):
            await share_access.create_share(memory_storage, MEMBER_A, public_request(**kwargs))

    @pytest.mark.asyncio
    async def test_first_violation_wins(self, memory_storage):
        with pytest.raises(ValidationFailed, match="At least one layer"):
            await share_access.create_share(
                memory_storage, MEMBER_A, public_request(layer_ids=[], name="x" * 500)
            )

    @pytest.mark.asyncio
    async def test_limits_at_the_boundary_are_accepted(self, memory_storage):
        share = await share_access.create_share(
            memory_storage,
            MEMBER_A,
            public_request(layer_ids=[f"l{i}" for i in range(100)], name="x" * 200, description="y" * 2000),
        )
        assert len(share.layer_config.layer_ids) == 100

    @pytest.mark.asyncio
    async def test_new_share_lives_one_year(self, memory_storage):
        before = utc_now()
        share = await share_access.create_share(memory_storage, MEMBER_A, public_request())

        assert share.expires_at - share.created_at == timedelta(days=365)
        assert share.created_at >= before
        assert share.is_active
        assert share.renewed_at is None
        assert share.view_settings == ShareViewSettings()

    @pytest.mark.asyncio
    async def test_short_code_collisions_are_retried(self, memory_storage, monkeypatch):
        await memory_storage.shares.create(make_share(short_code="TakenAA2"))
        codes = iter(["TakenAA2", "TakenAA2", "FreshBB3"])
        monkeypatch.setattr(share_access, "generate_short_code", lambda: next(codes))

        share = await share_access.create_share(memory_storage, MEMBER_A, public_request())

        assert share.short_code == "FreshBB3"

    @pytest.mark.asyncio
    async def test_collision_retries_are_bounded(self, memory_storage, monkeypatch):
        await memory_storage.shares.create(make_share(short_code="TakenAA2"))
        attempts = []

        def always_taken():
            attempts.append(1)
            return "TakenAA2"

        monkeypatch.setattr(share_access, "generate_short_code", always_taken)

        with pytest.raises(AlreadyExists) as exc_info:
            await share_access.create_share(memory_storage, MEMBER_A, public_request())

        assert not isinstance(exc_info.value, ShortCodeTaken)
        assert len(attempts) == share_access.SHORT_CODE_ATTEMPTS

    def test_users_share_url_has_no_key(self):
        share = make_share(visibility=ShareVisibility.USERS)
        assert share_access.build_share_url(TEST_BASE_URL + "/", share) == f"{TEST_BASE_URL}/s/AbCdEf23"

    def test_embed_code(self):
        public = make_share(name=None)
        assert share_access.build_embed_code(TEST_BASE_URL, public) == (
            f'<iframe src="{TEST_BASE_URL}/embed/AbCdEf23?k={"ab" * 32}" width="600" height="600" '
            f'frameborder="0" title="Annual Wheel"></iframe>'
        )
        users = make_share(visibility=ShareVisibility.USERS, name="Q3 plan")
        assert share_access.build_embed_code(TEST_BASE_URL, users) == (
            f'<iframe src="{TEST_BASE_URL}/embed/AbCdEf23" width="600" height="600" '
            f'frameborder="0" title="Q3 plan"></iframe>'
        )


# ────────────────────────────────────────────────────────────────
# Access state machine
# ────────────────────────────────────────────────────────────────

class TestPublicAccess:

    @pytest.mark.asyncio
    async def test_valid_access_returns_projected_activities_and_counts_view(self, storage):
        share = await share_access.create_share(
            storage, MEMBER_A, public_request(name="Board", year=2025)
        )
        await add_activity(storage, "a1", "layer-1", datetime(2025, 3, 1, tzinfo=timezone.utc),
                           datetime(2025, 3, 2, tzinfo=timezone.utc))
        await add_activity(storage, "a2", "layer-3", datetime(2025, 4, 1, tzinfo=timezone.utc),
                           datetime(2025, 4, 2, tzinfo=timezone.utc))
        await add_activity(storage, "a3", "layer-2", datetime(2024, 4, 1, tzinfo=timezone.utc),
                           datetime(2024, 4, 2, tzinfo=timezone.utc))

        response = await share_access.access_public_share(storage, share.short_code, share.share_key)

        assert response.success is True
        assert response.error is None
        assert response.config.title == "Board"
        assert response.config.organization_name == "Organization"
        assert response.config.layers.layer_ids == ["layer-1", "layer-2"]
        assert [a.id for a in response.activities] == ["a1"]
        projected = response.activities[0].model_dump(by_alias=True)
        assert projected["layerId"] == "layer-1"
        assert "createdBy" not in projected
        assert "organizationId" not in projected
        assert (await storage.shares.get(ORG_A, share.id)).stats.view_count == 1

    @pytest.mark.asyncio
    async def test_year_defaults_to_current_year(self, memory_storage):
        share = await memory_storage.shares.create(make_share(expires_in=timedelta(days=365 * 20)))
        now = datetime(2031, 6, 1, tzinfo=timezone.utc)
        await add_activity(memory_storage, "this-year", "layer-1", datetime(2031, 2, 1, tzinfo=timezone.utc),
                           datetime(2031, 2, 2, tzinfo=timezone.utc))
        await add_activity(memory_storage, "last-year", "layer-1", datetime(2030, 2, 1, tzinfo=timezone.utc),
                           datetime(2030, 2, 2, tzinfo=timezone.utc))

        response = await share_access.access_public_share(
            memory_storage, share.short_code, share.share_key, now=now
        )

        assert [a.id for a in response.activities] == ["this-year"]

    @pytest.mark.parametrize(
        "code,key,message",
        [
            ("bad", "ab" * 32, "Invalid share code"),
            ("AbCdEf2O", "ab" * 32, "Invalid share code"),
            ("Zz234567", "ab" * 32, "Invalid share code"),
            ("AbCdEf23", "not-a-key", "Invalid share key"),
            ("AbCdEf23", None, "Invalid share key"),
            ("AbCdEf23", "AB" * 32, "Invalid share key"),
            ("AbCdEf23", "cd" * 32, "Invalid share key"),
        ],
    )
    @pytest.mark.asyncio
    async def test_generic_failures(self, memory_storage, code, key, message):
        await memory_storage.shares.create(make_share())

        response = await share_access.access_public_share(memory_storage, code, key)

        assert response.success is False
        assert response.error == message
        assert (await memory_storage.shares.get(ORG_A, "share-1")).stats.view_count == 0

    @pytest.mark.asyncio
    async def test_deactivated_share(self, storage):
        share = await storage.shares.create(make_share(is_active=False))

        response = await share_access.access_public_share(storage, share.short_code, share.share_key)

        assert response.error == "Share has been deactivated"

    @pytest.mark.asyncio
    async def test_key_is_checked_before_deactivation_and_expiry(self, memory_storage):
        share = await memory_storage.shares.create(
            make_share(is_active=False, expires_in=timedelta(days=-5))
        )

        wrong = await share_access.access_public_share(memory_storage, share.short_code, "cd" * 32)
        right = await share_access.access_public_share(memory_storage, share.short_code, share.share_key)

        assert wrong.error == "Invalid share key"
        assert right.error == "Share has been deactivated"

    def test_evaluate_order(self):
        share = make_share(expires_in=timedelta(days=-1))
        assert evaluate_share(share, "cd" * 32) == AccessOutcome.KEY_MISMATCH
        assert evaluate_share(share, share.share_key) == AccessOutcome.EXPIRED
        assert evaluate_share(make_share(), share.share_key) == AccessOutcome.VALID

    @pytest.mark.asyncio
    async def test_view_count_failure_does_not_fail_access(self, memory_storage, monkeypatch):
        share = await share_access.create_share(memory_storage, MEMBER_A, public_request())

        async def broken(*args, **kwargs):
            raise RuntimeError("counter offline")

        monkeypatch.setattr(memory_storage.shares, "increment_views", broken)

        response = await share_access.access_public_share(memory_storage, share.short_code, share.share_key)
        assert response.success is True


class TestAuthenticatedAccess:

    @pytest.mark.asyncio
    async def test_member_of_owning_org_can_open_users_share(self, memory_storage):
        share = await share_access.create_share(
            memory_storage, MEMBER_A, public_request(visibility=ShareVisibility.USERS)
        )

        response = await share_access.access_authenticated_share(memory_storage, MEMBER_A, share.short_code)

        assert response.success is True
        assert (await memory_storage.shares.get(ORG_A, share.id)).stats.view_count == 1

    @pytest.mark.asyncio
    async def test_other_org_is_denied(self, memory_storage):
        share = await share_access.create_share(
            memory_storage, MEMBER_A, public_request(visibility=ShareVisibility.USERS)
        )

        response = await share_access.access_authenticated_share(memory_storage, MEMBER_B, share.short_code)

        assert response.success is False
        assert response.error == "Access denied"


# ────────────────────────────────────────────────────────────────
# Lifecycle
# ────────────────────────────────────────────────────────────────

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_renew_extends_one_year_from_now(self, storage):
        share = await storage.shares.create(make_share(expires_in=timedelta(days=5)))
        before = utc_now()

        renewed = await share_access.renew_share(storage, MEMBER_A, share.id)

        assert renewed.renewed_at is not None
        assert renewed.renewed_at >= before
        assert renewed.expires_at - renewed.renewed_at == timedelta(days=365)
        assert not renewed.needs_renewal()
        assert (await storage.shares.get(ORG_A, share.id)).expires_at == renewed.expires_at

    @pytest.mark.asyncio
    async def test_other_org_cannot_renew_regenerate_or_read(self, storage):
        share = await storage.shares.create(make_share())

        with pytest.raises(NotFound):
            await share_access.renew_share(storage, MEMBER_B, share.id)
        with pytest.raises(NotFound):
            await share_access.regenerate_share_key(storage, MEMBER_B, share.id)
        with pytest.raises(NotFound):
            await share_access.get_share(storage, MEMBER_B, share.id)

        assert (await storage.shares.get(ORG_A, share.id)).share_key == share.share_key

    @pytest.mark.asyncio
    async def test_update_deactivates_and_revalidates(self, storage):
        share = await storage.shares.create(make_share())

        updated = await share_access.update_share(
            storage, MEMBER_A, share.id, UpdateShareRequest(name="Renamed", is_active=False)
        )
        assert updated.name == "Renamed"
        assert updated.is_active is False

        with pytest.raises(ValidationFailed):
            await share_access.update_share(
                storage, MEMBER_A, share.id, UpdateShareRequest(layer_config=ShareLayerConfig(layer_ids=[]))
            )

    @pytest.mark.asyncio
    async def test_deactivated_share_cannot_be_reactivated(self, storage):
        share = await storage.shares.create(make_share())
        await share_access.update_share(storage, MEMBER_A, share.id, UpdateShareRequest(is_active=False))

        with pytest.raises(ValidationFailed):
            await share_access.update_share(storage, MEMBER_A, share.id, UpdateShareRequest(is_active=True))

        stored = await storage.shares.get(ORG_A, share.id)
        assert stored.is_active is False
        response = await share_access.access_public_share(storage, share.short_code, share.share_key)
        assert response.success is False
        assert response.error == "Share has been deactivated"

    @pytest.mark.asyncio
    async def test_active_flag_true_on_active_share_is_accepted(self, storage):
        share = await storage.shares.create(make_share())
        updated = await share_access.update_share(storage, MEMBER_A, share.id, UpdateShareRequest(is_active=True))
        assert updated.is_active is True

    @pytest.mark.asyncio
    async def test_explicit_null_clears_name_and_description(self, storage):
        share = await storage.shares.create(make_share(description="Shared with partners"))

        updated = await share_access.update_share(
            storage, MEMBER_A, share.id, UpdateShareRequest(name=None, description=None)
        )
        assert updated.name is None
        assert updated.description is None

        stored = await storage.shares.get(ORG_A, share.id)
        assert stored.name is None
        assert stored.description is None
        response = await share_access.access_public_share(storage, share.short_code, share.share_key)
        assert response.config.title == "Annual Wheel"

    @pytest.mark.asyncio
    async def test_omitted_fields_are_left_alone(self, storage):
        share = await storage.shares.create(make_share(description="Shared with partners"))

        updated = await share_access.update_share(
            storage, MEMBER_A, share.id, UpdateShareRequest(view_settings=ShareViewSettings(show_legend=False))
        )
        assert updated.name == "Q3 plan"
        assert updated.description == "Shared with partners"

    @pytest.mark.asyncio
    async def test_list_filters_and_orders_newest_first(self, memory_storage):
        base = utc_now()
        await memory_storage.shares.create(make_share(share_id="s1", short_code="AAAAAAA2", created_at=base))
        await memory_storage.shares.create(
            make_share(share_id="s2", short_code="AAAAAAA3", created_at=base + timedelta(minutes=1),
                       visibility=ShareVisibility.USERS)
        )
        await memory_storage.shares.create(
            make_share(share_id="s3", short_code="AAAAAAA4", created_at=base + timedelta(minutes=2),
                       is_active=False)
        )

        everything = await share_access.list_shares(memory_storage, MEMBER_A)
        public = await share_access.list_shares(memory_storage, MEMBER_A, visibility=ShareVisibility.PUBLIC)
        active = await share_access.list_shares(memory_storage, MEMBER_A, is_active=True)

        assert [s.id for s in everything.items] == ["s3", "s2", "s1"]
        assert [s.id for s in public.items] == ["s3", "s1"]
        assert [s.id for s in active.items] == ["s2", "s1"]
        assert (await share_access.list_shares(memory_storage, MEMBER_B)).items == []

    @pytest.mark.asyncio
    async def test_delete_then_access_is_invalid_code(self, storage):
        share = await share_access.create_share(storage, MEMBER_A, public_request())

        await share_access.delete_share(storage, MEMBER_A, share.id)
        await share_access.delete_share(storage, MEMBER_A, share.id)

        response = await share_access.access_public_share(storage, share.short_code, share.share_key)
        assert response.error == "Invalid share code"
