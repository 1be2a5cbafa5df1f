"""Tests for the integration credential lifecycle.

Tests cover:
- Expiry predicates and the refresh buffer boundary
- The refresh failure ceiling and deactivation
- Refresh-if-needed, including per-credential serialization
- Storage, reactivation and listing
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from teamguard.core.credential_cipher import CredentialCipher
from teamguard.core.errors import (
    CredentialDeactivatedError,
    CredentialNotFoundError,
    RefreshFailureError,
)
from teamguard.core.integration_credentials import (
    CredentialState,
    IntegrationCredentialManager,
    KeyedLocks,
    TokenSet,
    credential_state,
    is_refresh_token_expired,
    is_token_expired,
    should_deactivate,
)
from teamguard.database import utcnow
from teamguard.models import CredentialType, IntegrationCredential, Provider

BUFFER = timedelta(minutes=5)
TOKEN_CONFIG = {"token_url": "https://auth.presto.example.com/oauth/token", "client_id": "teamguard"}


class FakeRefresher:
    """Token endpoint double that records calls."""

    def __init__(self, tokens: TokenSet | None = None, error: Exception | None = None, delay: float = 0):
        self.tokens = tokens or TokenSet(access_token="access-2", refresh_token="refresh-2", expires_in=3600)
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []
        self.credentials: list[dict] = []

    async def __call__(self, refresh_token, config, credentials):
        self.calls.append((refresh_token, config))
        self.credentials.append(credentials)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.tokens


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def manager(db_session, locks):
    return IntegrationCredentialManager(
        db_session,
        refresh_buffer=BUFFER,
        max_refresh_errors=3,
        locks=locks,
    )


async def _connect(manager, tenant_id, expires_in=3600, refresh_token="refresh-1", refresh_expires_in=None):
    await manager.save_credentials(
        tenant_id,
        Provider.PRESTO,
        {"username": "coach", "password": "hunter22"},
        config=dict(TOKEN_CONFIG),
        credential_type=CredentialType.OAUTH2,
    )
    return await manager.save_tokens(
        tenant_id,
        Provider.PRESTO,
        TokenSet(
            access_token="access-1",
            refresh_token=refresh_token,
            expires_in=expires_in,
            refresh_expires_in=refresh_expires_in,
        ),
    )


class TestExpiryPredicates:
    """Tests for the pure credential predicates."""

    def test_no_expiry_recorded(self):
        assert is_token_expired(IntegrationCredential(token_expires_at=None), utcnow(), BUFFER) is True

    def test_expiry_exactly_at_buffer(self):
        now = utcnow()
        credential = IntegrationCredential(token_expires_at=now + BUFFER)
        assert is_token_expired(credential, now, BUFFER) is True

    def test_expiry_just_past_buffer(self):
        now = utcnow()
        credential = IntegrationCredential(token_expires_at=now + BUFFER + timedelta(seconds=1))
        assert is_token_expired(credential, now, BUFFER) is False

    def test_already_expired(self):
        now = utcnow()
        credential = IntegrationCredential(token_expires_at=now - timedelta(hours=1))
        assert is_token_expired(credential, now, BUFFER) is True

    def test_refresh_expiry_unknown_is_valid(self):
        assert is_refresh_token_expired(IntegrationCredential(refresh_token_expires_at=None)) is False

    def test_refresh_expiry(self):
        now = utcnow()
        assert is_refresh_token_expired(IntegrationCredential(refresh_token_expires_at=now), now) is True
        assert is_refresh_token_expired(
            IntegrationCredential(refresh_token_expires_at=now + timedelta(seconds=1)), now
        ) is False

    def test_should_deactivate(self):
        assert should_deactivate(IntegrationCredential(refresh_error_count=2), 3) is False
        assert should_deactivate(IntegrationCredential(refresh_error_count=3), 3) is True

    def test_state(self):
        now = utcnow()
        fresh = IntegrationCredential(is_active=True, token_expires_at=now + timedelta(hours=1))
        stale = IntegrationCredential(is_active=True, token_expires_at=now + timedelta(minutes=1))
        off = IntegrationCredential(is_active=False, token_expires_at=now + timedelta(hours=1))
        dead_refresh = IntegrationCredential(
            is_active=True,
            token_expires_at=now + timedelta(hours=1),
            refresh_token_expires_at=now - timedelta(seconds=1),
        )

        assert credential_state(fresh, now, BUFFER) == CredentialState.ACTIVE_FRESH
        assert credential_state(stale, now, BUFFER) == CredentialState.ACTIVE_NEEDS_REFRESH
        assert credential_state(off, now, BUFFER) == CredentialState.DEACTIVATED
        assert credential_state(dead_refresh, now, BUFFER) == CredentialState.DEACTIVATED


class TestTokenSet:
    def test_relative_lifetime_wins(self):
        now = utcnow()
        tokens = TokenSet(access_token="a", expires_in=60, expires_at=now + timedelta(days=1))
        assert tokens.token_expiry(now) == now + timedelta(seconds=60)

    def test_absolute_expiry(self):
        now = utcnow()
        tokens = TokenSet(access_token="a", refresh_expires_at=now + timedelta(days=30))
        assert tokens.token_expiry(now) is None
        assert tokens.refresh_token_expiry(now) == now + timedelta(days=30)


class TestStorage:
    """Tests for saving and reading credentials."""

    async def test_secrets_encrypted_at_rest(self, manager, db_session, test_team):
        credential = await _connect(manager, test_team.id)

        assert "hunter22" not in credential.credentials_encrypted
        assert credential.access_token_encrypted != "access-1"
        assert credential.refresh_token_encrypted != "refresh-1"
        assert CredentialCipher().decrypt(credential.refresh_token_encrypted) == "refresh-1"

    async def test_get_credentials(self, manager, test_team):
        await _connect(manager, test_team.id)
        decrypted = await manager.get_credentials(test_team.id, "presto")

        assert decrypted.credentials == {"username": "coach", "password": "hunter22"}
        assert decrypted.access_token == "access-1"
        assert decrypted.config["token_url"] == TOKEN_CONFIG["token_url"]
        assert decrypted.is_token_expired is False

    async def test_get_missing(self, manager, test_team):
        with pytest.raises(CredentialNotFoundError):
            await manager.get_credentials(test_team.id, Provider.HUDL)

    async def test_get_deactivated(self, manager, test_team):
        await _connect(manager, test_team.id)
        await manager.deactivate(test_team.id, Provider.PRESTO)

        with pytest.raises(CredentialDeactivatedError):
            await manager.get_credentials(test_team.id, Provider.PRESTO)

    async def test_one_credential_per_provider(self, manager, db_session, test_team):
        await _connect(manager, test_team.id)
        await manager.save_credentials(test_team.id, Provider.PRESTO, {"username": "new"})

        rows = (await db_session.execute(select(IntegrationCredential))).scalars().all()
        assert len(rows) == 1

    async def test_tenants_isolated(self, manager, test_team, other_team):
        await _connect(manager, test_team.id)

        with pytest.raises(CredentialNotFoundError):
            await manager.get_credentials(other_team.id, Provider.PRESTO)

    async def test_update_config_merges(self, manager, test_team):
        await _connect(manager, test_team.id)
        credential = await manager.update_config(test_team.id, Provider.PRESTO, {"season_id": "2025-26"})

        assert credential.config["season_id"] == "2025-26"
        assert credential.config["token_url"] == TOKEN_CONFIG["token_url"]

    async def test_delete(self, manager, test_team):
        await _connect(manager, test_team.id)

        assert await manager.delete(test_team.id, Provider.PRESTO) is True
        assert await manager.delete(test_team.id, Provider.PRESTO) is False


class TestFailureCeiling:
    """Consecutive failures deactivate at the configured maximum."""

    async def test_below_ceiling_stays_active(self, manager, test_team):
        credential = await _connect(manager, test_team.id)

        assert await manager.record_refresh_failure(credential, "timeout") is False
        assert await manager.record_refresh_failure(credential, "timeout") is False
        assert credential.is_active is True
        assert credential.refresh_error_count == 2

    async def test_ceiling_deactivates(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        for _ in range(2):
            await manager.record_refresh_failure(credential, "timeout")

        assert await manager.record_refresh_failure(credential, "timeout") is True
        assert credential.is_active is False
        assert credential.refresh_error_count == 3

    async def test_failure_message_sanitized(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        await manager.record_refresh_failure(credential, "POST /oauth/token?refresh_token=leaky failed")

        assert "leaky" not in credential.last_refresh_error

    async def test_success_resets_but_does_not_reactivate(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        for _ in range(3):
            await manager.record_refresh_failure(credential, "invalid_grant")

        await manager.record_refresh_success(credential)

        assert credential.refresh_error_count == 0
        assert credential.last_refresh_error is None
        assert credential.last_refreshed_at is not None
        assert credential.is_active is False

    async def test_success_is_idempotent(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        now = utcnow()
        await manager.record_refresh_success(credential, now)
        await manager.record_refresh_success(credential, now)

        assert credential.refresh_error_count == 0
        assert credential.last_refreshed_at == now

    async def test_reactivate(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        for _ in range(3):
            await manager.record_refresh_failure(credential, "invalid_grant")

        credential = await manager.reactivate(test_team.id, Provider.PRESTO)
        assert credential.is_active is True
        assert credential.refresh_error_count == 0

    async def test_reauthentication_reactivates(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        for _ in range(3):
            await manager.record_refresh_failure(credential, "invalid_grant")

        credential = await manager.save_credentials(test_team.id, Provider.PRESTO, {"username": "coach"})
        assert credential.is_active is True
        assert credential.refresh_error_count == 0


class TestRefreshIfNeeded:
    """Tests for refresh_token_if_needed()."""

    async def test_fresh_token_returned(self, manager, test_team):
        await _connect(manager, test_team.id, expires_in=3600)
        refresher = FakeRefresher()

        result = await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)

        assert result.access_token == "access-1"
        assert result.refreshed is False
        assert refresher.calls == []

    async def test_token_in_buffer_refreshed(self, manager, test_team):
        await _connect(manager, test_team.id, expires_in=60)
        refresher = FakeRefresher()

        result = await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)

        assert result.access_token == "access-2"
        assert result.refreshed is True
        assert refresher.calls == [("refresh-1", TOKEN_CONFIG)]
        assert refresher.credentials == [{"username": "coach", "password": "hunter22"}]

        decrypted = await manager.get_credentials(test_team.id, Provider.PRESTO)
        assert decrypted.access_token == "access-2"
        assert decrypted.is_token_expired is False
        assert decrypted.credential.refresh_error_count == 0
        assert decrypted.credential.last_refreshed_at is not None
        assert CredentialCipher().decrypt(decrypted.credential.refresh_token_encrypted) == "refresh-2"

    async def test_refresh_resets_previous_failures(self, manager, test_team):
        credential = await _connect(manager, test_team.id, expires_in=60)
        await manager.record_refresh_failure(credential, "timeout")

        await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, FakeRefresher())

        decrypted = await manager.get_credentials(test_team.id, Provider.PRESTO)
        assert decrypted.credential.refresh_error_count == 0

    async def test_no_refresh_token(self, manager, test_team):
        await _connect(manager, test_team.id, expires_in=60, refresh_token=None)

        with pytest.raises(RefreshFailureError):
            await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, FakeRefresher())

    async def test_expired_refresh_token_deactivates(self, manager, test_team):
        credential = await _connect(manager, test_team.id, expires_in=60)
        credential.refresh_token_expires_at = utcnow() - timedelta(minutes=1)
        await manager.db.commit()
        refresher = FakeRefresher()

        with pytest.raises(CredentialDeactivatedError):
            await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)

        assert refresher.calls == []
        assert (await manager._require(test_team.id, Provider.PRESTO)).is_active is False

    async def test_provider_failure_counted(self, manager, test_team):
        await _connect(manager, test_team.id, expires_in=60)
        refresher = FakeRefresher(error=RuntimeError("invalid_grant for refresh_token=leaky"))

        with pytest.raises(RefreshFailureError) as exc_info:
            await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)

        assert exc_info.value.deactivated is False
        assert "leaky" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None

        credential = await manager._require(test_team.id, Provider.PRESTO)
        assert credential.refresh_error_count == 1
        assert "leaky" not in credential.last_refresh_error

    async def test_repeated_provider_failures_deactivate(self, manager, test_team):
        await _connect(manager, test_team.id, expires_in=60)
        refresher = FakeRefresher(error=RuntimeError("invalid_grant"))

        for attempt in range(1, 4):
            with pytest.raises(RefreshFailureError) as exc_info:
                await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)
            assert exc_info.value.deactivated is (attempt == 3)

        with pytest.raises(CredentialDeactivatedError):
            await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)
        assert len(refresher.calls) == 3

    async def test_missing_credential(self, manager, test_team):
        with pytest.raises(CredentialNotFoundError):
            await manager.refresh_token_if_needed(test_team.id, Provider.SYNERGY, FakeRefresher())

    async def test_concurrent_refreshes_serialized(self, session_maker, locks, test_team):
        """Two callers racing on one credential trigger one provider call."""
        async with session_maker() as db:
            await _connect(
                IntegrationCredentialManager(db, refresh_buffer=BUFFER, locks=locks),
                test_team.id,
                expires_in=60,
            )

        refresher = FakeRefresher(delay=0.05)

        async def refresh():
            async with session_maker() as db:
                manager = IntegrationCredentialManager(db, refresh_buffer=BUFFER, locks=locks)
                return await manager.refresh_token_if_needed(test_team.id, Provider.PRESTO, refresher)

        first, second = await asyncio.gather(refresh(), refresh())

        assert len(refresher.calls) == 1
        assert sorted([first.refreshed, second.refreshed]) == [False, True]
        assert first.access_token == second.access_token == "access-2"


class TestSweepQueries:
    """Tests for the queries the refresh sweep relies on."""

    async def test_find_credentials_needing_refresh(self, manager, test_team, other_team):
        await _connect(manager, test_team.id, expires_in=60)
        await _connect(manager, other_team.id, expires_in=3600)

        found = await manager.find_credentials_needing_refresh()
        assert [c.tenant_id for c in found] == [test_team.id]

    async def test_inactive_and_tokenless_excluded(self, manager, test_team, other_team):
        await _connect(manager, test_team.id, expires_in=60)
        await manager.deactivate(test_team.id, Provider.PRESTO)
        await _connect(manager, other_team.id, expires_in=60, refresh_token=None)

        assert await manager.find_credentials_needing_refresh() == []

    async def test_deactivate_expired_refresh_tokens(self, manager, test_team, other_team):
        await _connect(manager, test_team.id, expires_in=60, refresh_expires_in=60)
        await _connect(manager, other_team.id, expires_in=60, refresh_expires_in=86400)

        later = utcnow() + timedelta(minutes=2)
        assert await manager.deactivate_expired_refresh_tokens(later) == 1
        assert [c.tenant_id for c in await manager.find_credentials_needing_refresh(later)] == [other_team.id]

    async def test_list_team_integrations(self, manager, test_team):
        credential = await _connect(manager, test_team.id)
        await manager.record_refresh_failure(credential, "timeout")

        summaries = await manager.list_team_integrations(test_team.id)

        assert len(summaries) == 1
        assert summaries[0].provider == "presto"
        assert summaries[0].credential_type == "oauth2"
        assert summaries[0].has_errors is True
        assert not hasattr(summaries[0], "credentials_encrypted")
