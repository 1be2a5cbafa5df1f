"""Tests for the permission evaluator and grant management."""

from datetime import timedelta

import pytest

from teamguard.core.errors import (
    EvaluationError,
    PermissionDeniedError,
    PermissionExpiredError,
)
from teamguard.core.permissions import (
    HEAD_COACH_DENIED,
    CheckMode,
    DenialReason,
    GrantManager,
    PermissionDecision,
    PermissionEvaluator,
    normalize_capabilities,
)
from teamguard.core.principal import Principal
from teamguard.database import utcnow
from teamguard.models import Capability

EDIT = Capability.DEPTH_CHART_EDIT
VIEW = Capability.DEPTH_CHART_VIEW
DELETE = Capability.DEPTH_CHART_DELETE


class _BrokenSession:
    """Stands in for a session whose backing store is unavailable."""

    async def execute(self, *args, **kwargs):
        raise ConnectionError("database is unavailable")


class TestNormalizeCapabilities:
    """Tests for capability validation."""

    def test_single_value(self):
        assert normalize_capabilities(EDIT) == ((EDIT,), CheckMode.SINGLE)

    def test_string_values(self):
        requested, mode = normalize_capabilities(["depth_chart_view", "depth_chart_edit"], "any")
        assert requested == (VIEW, EDIT)
        assert mode == CheckMode.ANY

    def test_duplicates_collapsed(self):
        requested, _ = normalize_capabilities([EDIT, EDIT, VIEW], CheckMode.ALL)
        assert requested == (EDIT, VIEW)

    def test_unknown_capability(self):
        with pytest.raises(ValueError):
            normalize_capabilities("launch_rockets")

    def test_empty_set(self):
        with pytest.raises(ValueError):
            normalize_capabilities([], CheckMode.ANY)

    def test_single_mode_takes_one(self):
        with pytest.raises(ValueError):
            normalize_capabilities([VIEW, EDIT], CheckMode.SINGLE)


class TestSuperAdmin:
    """Super admins bypass every check."""

    @pytest.mark.parametrize("capability", list(Capability))
    async def test_every_capability_allowed(self, db_session, super_admin, capability):
        decision = await PermissionEvaluator(db_session).check(Principal.from_user(super_admin), capability)
        assert decision.allowed

    @pytest.mark.parametrize("mode", [CheckMode.ANY, CheckMode.ALL])
    async def test_every_combinator_allowed(self, db_session, super_admin, mode):
        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(super_admin), list(Capability), mode
        )
        assert decision.allowed

    async def test_no_store_access(self, super_admin):
        decision = await PermissionEvaluator(_BrokenSession()).check(
            Principal.from_user(super_admin), Capability.SYSTEM_PROFILE_DELETE
        )
        assert decision.allowed


class TestHeadCoach:
    """Head coaches hold every capability outside the deny-list."""

    async def test_denied_capability(self, db_session, head_coach):
        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(head_coach), Capability.SYSTEM_PROFILE_DELETE
        )
        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_DENIED

    async def test_allowed_without_grant(self, head_coach):
        # Never touches the store
        decision = await PermissionEvaluator(_BrokenSession()).check(Principal.from_user(head_coach), EDIT)
        assert decision.allowed

    async def test_any_with_one_denied(self, db_session, head_coach):
        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(head_coach), [Capability.SYSTEM_PROFILE_DELETE, EDIT], CheckMode.ANY
        )
        assert decision.allowed

    async def test_all_with_one_denied(self, db_session, head_coach):
        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(head_coach), [Capability.SYSTEM_PROFILE_DELETE, EDIT], CheckMode.ALL
        )
        assert not decision.allowed
        assert decision.missing == (Capability.SYSTEM_PROFILE_DELETE,)

    def test_deny_list(self):
        assert HEAD_COACH_DENIED == {Capability.SYSTEM_PROFILE_DELETE}


class TestGrantedCapabilities:
    """Assistant coaches need stored grants."""

    async def test_no_grant_denied(self, db_session, assistant_coach):
        decision = await PermissionEvaluator(db_session).check(Principal.from_user(assistant_coach), EDIT)

        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_DENIED
        assert decision.missing == (EDIT,)

    async def test_grant_allows(self, db_session, assistant_coach, head_coach):
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, head_coach.id)

        decision = await PermissionEvaluator(db_session).check(Principal.from_user(assistant_coach), EDIT)
        assert decision.allowed
        assert decision.reason is None

    async def test_grant_is_per_capability(self, db_session, assistant_coach):
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, VIEW)

        decision = await PermissionEvaluator(db_session).check(Principal.from_user(assistant_coach), EDIT)
        assert not decision.allowed

    async def test_grant_in_other_team_ignored(self, db_session, assistant_coach, other_team):
        await GrantManager(db_session).grant(assistant_coach.id, other_team.id, EDIT)

        decision = await PermissionEvaluator(db_session).check(Principal.from_user(assistant_coach), EDIT)
        assert not decision.allowed

    async def test_withdrawn_grant_ignored(self, db_session, assistant_coach):
        grant = await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT)
        grant.is_granted = False
        await db_session.commit()

        decision = await PermissionEvaluator(db_session).check(Principal.from_user(assistant_coach), EDIT)
        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_DENIED


class TestGrantExpiry:
    """A grant expiring at T allows before T and is expired after."""

    async def test_before_expiry(self, db_session, assistant_coach):
        expires = utcnow() + timedelta(hours=1)
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, expires_at=expires)

        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(assistant_coach), EDIT, now=expires - timedelta(seconds=1)
        )
        assert decision.allowed

    async def test_after_expiry(self, db_session, assistant_coach):
        expires = utcnow() + timedelta(hours=1)
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, expires_at=expires)

        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(assistant_coach), EDIT, now=expires + timedelta(seconds=1)
        )
        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_EXPIRED

    async def test_expired_and_never_granted(self, db_session, assistant_coach):
        expires = utcnow() - timedelta(hours=1)
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, expires_at=expires)

        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(assistant_coach), [EDIT, VIEW], CheckMode.ANY
        )
        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_EXPIRED
        assert set(decision.missing) == {EDIT, VIEW}

    async def test_any_with_live_grant_ignores_expired(self, db_session, assistant_coach):
        manager = GrantManager(db_session)
        await manager.grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, expires_at=utcnow() - timedelta(hours=1))
        await manager.grant(assistant_coach.id, assistant_coach.tenant_id, VIEW)

        decision = await PermissionEvaluator(db_session).check(
            Principal.from_user(assistant_coach), [EDIT, VIEW], CheckMode.ANY
        )
        assert decision.allowed


class TestCombinators:
    """any/all semantics over multiple capabilities."""

    @pytest.fixture
    async def view_only(self, db_session, assistant_coach):
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, VIEW)
        return Principal.from_user(assistant_coach)

    async def test_any_with_one_granted(self, db_session, view_only):
        decision = await PermissionEvaluator(db_session).check(view_only, [VIEW, EDIT], CheckMode.ANY)
        assert decision.allowed

    async def test_all_with_one_granted(self, db_session, view_only):
        decision = await PermissionEvaluator(db_session).check(view_only, [VIEW, EDIT], CheckMode.ALL)

        assert not decision.allowed
        assert decision.reason == DenialReason.PERMISSION_DENIED
        assert decision.missing == (EDIT,)

    async def test_all_with_every_capability(self, db_session, view_only, assistant_coach):
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, EDIT)

        decision = await PermissionEvaluator(db_session).check(view_only, [VIEW, EDIT], CheckMode.ALL)
        assert decision.allowed

    async def test_all_requires_each_capability(self, db_session, view_only, assistant_coach):
        # Two grants, but not the two requested
        await GrantManager(db_session).grant(assistant_coach.id, assistant_coach.tenant_id, DELETE)

        decision = await PermissionEvaluator(db_session).check(view_only, [VIEW, EDIT], CheckMode.ALL)
        assert not decision.allowed


class TestEvaluationFailure:
    """Store failures fail closed with a distinct reason."""

    async def test_store_failure(self, assistant_coach):
        decision = await PermissionEvaluator(_BrokenSession()).check(Principal.from_user(assistant_coach), EDIT)

        assert not decision.allowed
        assert decision.reason == DenialReason.EVALUATION_ERROR

    async def test_require_raises_evaluation_error(self, assistant_coach):
        with pytest.raises(EvaluationError):
            await PermissionEvaluator(_BrokenSession()).require(Principal.from_user(assistant_coach), EDIT)


class TestRaiseForDenial:
    """Mapping of decisions to exceptions."""

    def test_allowed(self):
        PermissionDecision(True, (EDIT,), CheckMode.SINGLE).raise_for_denial()

    def test_denied(self):
        decision = PermissionDecision(False, (EDIT,), CheckMode.SINGLE, DenialReason.PERMISSION_DENIED, (EDIT,))
        with pytest.raises(PermissionDeniedError) as exc_info:
            decision.raise_for_denial()
        assert exc_info.value.capabilities == ["depth_chart_edit"]

    def test_expired(self):
        decision = PermissionDecision(False, (EDIT,), CheckMode.SINGLE, DenialReason.PERMISSION_EXPIRED, (EDIT,))
        with pytest.raises(PermissionExpiredError):
            decision.raise_for_denial()


class TestGrantManager:
    """Tests for grant storage."""

    async def test_grant_fields(self, db_session, assistant_coach, head_coach):
        expires = utcnow() + timedelta(days=30)
        grant = await GrantManager(db_session).grant(
            assistant_coach.id,
            assistant_coach.tenant_id,
            "depth_chart_edit",
            granted_by=head_coach.id,
            expires_at=expires,
            notes="Covering for the offensive coordinator",
        )

        assert grant.principal_id == assistant_coach.id
        assert grant.capability == "depth_chart_edit"
        assert grant.is_granted
        assert grant.granted_by == head_coach.id
        assert grant.expires_at == expires
        assert grant.notes == "Covering for the offensive coordinator"

    async def test_regrant_replaces(self, db_session, assistant_coach):
        manager = GrantManager(db_session)
        await manager.grant(assistant_coach.id, assistant_coach.tenant_id, EDIT, expires_at=utcnow() - timedelta(days=1))
        grant = await manager.grant(assistant_coach.id, assistant_coach.tenant_id, EDIT)

        assert grant.expires_at is None
        grants = await manager.list_grants(assistant_coach.tenant_id, include_expired=True)
        assert len(grants) == 1

    async def test_revoke(self, db_session, assistant_coach):
        manager = GrantManager(db_session)
        await manager.grant(assistant_coach.id, assistant_coach.tenant_id, EDIT)

        assert await manager.revoke(assistant_coach.id, assistant_coach.tenant_id, EDIT) is True
        assert await manager.revoke(assistant_coach.id, assistant_coach.tenant_id, EDIT) is False
        assert await manager.get_grant(assistant_coach.id, assistant_coach.tenant_id, EDIT) is None

    async def test_list_grants_filters(self, db_session, assistant_coach, head_coach, other_team_coach):
        manager = GrantManager(db_session)
        tenant = assistant_coach.tenant_id
        await manager.grant(assistant_coach.id, tenant, EDIT)
        await manager.grant(assistant_coach.id, tenant, VIEW, expires_at=utcnow() - timedelta(hours=1))
        await manager.grant(head_coach.id, tenant, DELETE)
        await manager.grant(other_team_coach.id, other_team_coach.tenant_id, EDIT)

        live = await manager.list_grants(tenant)
        assert {(g.principal_id, g.capability) for g in live} == {
            (assistant_coach.id, EDIT.value),
            (head_coach.id, DELETE.value),
        }

        everything = await manager.list_grants(tenant, include_expired=True)
        assert len(everything) == 3

        mine = await manager.list_grants(tenant, principal_id=assistant_coach.id)
        assert [g.capability for g in mine] == [EDIT.value]

    async def test_purge_expired_grants(self, db_session, assistant_coach):
        manager = GrantManager(db_session)
        tenant = assistant_coach.tenant_id
        await manager.grant(assistant_coach.id, tenant, EDIT)
        await manager.grant(assistant_coach.id, tenant, VIEW, expires_at=utcnow() - timedelta(hours=1))
        await manager.grant(assistant_coach.id, tenant, DELETE, expires_at=utcnow() + timedelta(hours=1))

        assert await manager.purge_expired_grants() == 1
        remaining = await manager.list_grants(tenant, include_expired=True)
        assert {g.capability for g in remaining} == {EDIT.value, DELETE.value}
