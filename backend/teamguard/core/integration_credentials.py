"""Per-tenant credential lifecycle for third-party data providers.

State of a credential, derived from its row:

    ACTIVE_FRESH         token valid beyond the refresh buffer
    ACTIVE_NEEDS_REFRESH token inside the buffer window (or already expired)
    DEACTIVATED          error ceiling reached, refresh token expired, or
                         switched off by an operator

Only a successful refresh resets refresh_error_count. Nothing in this
module reactivates a credential except an explicit reactivate() or
save_credentials() (re-authentication).
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import select, update, delete, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.config import get_settings
from teamguard.core.credential_cipher import CredentialCipher
from teamguard.core.errors import (
    CredentialError,
    CredentialNotFoundError,
    CredentialDeactivatedError,
    RefreshFailureError,
)
from teamguard.core.logging import get_logger
from teamguard.core.sanitizer import sanitize_error
from teamguard.database import dialect_insert, utcnow
from teamguard.models import IntegrationCredential, CredentialType, Provider

logger = get_logger(__name__)


class CredentialState(str, Enum):
    ACTIVE_FRESH = "active_fresh"
    ACTIVE_NEEDS_REFRESH = "active_needs_refresh"
    DEACTIVATED = "deactivated"


@dataclass
class TokenSet:
    """Tokens returned by a provider.

    Relative lifetimes (seconds) win over absolute timestamps when both
    are given.
    """
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: datetime | None = None
    refresh_expires_in: int | None = None
    refresh_expires_at: datetime | None = None

    def token_expiry(self, now: datetime) -> datetime | None:
        if self.expires_in is not None:
            return now + timedelta(seconds=self.expires_in)
        return self.expires_at

    def refresh_token_expiry(self, now: datetime) -> datetime | None:
        if self.refresh_expires_in is not None:
            return now + timedelta(seconds=self.refresh_expires_in)
        return self.refresh_expires_at


# Called with the decrypted refresh token, the provider config and the
# decrypted static credentials (client secrets live there, never in config)
TokenRefresher = Callable[[str, dict[str, Any], dict[str, Any]], Awaitable[TokenSet]]


@dataclass
class DecryptedCredentials:
    credentials: dict[str, Any] | None
    access_token: str | None
    config: dict[str, Any]
    is_token_expired: bool
    credential: IntegrationCredential


@dataclass
class RefreshResult:
    access_token: str | None
    refreshed: bool


@dataclass
class IntegrationSummary:
    """Secret-free view of a credential for listing."""
    provider: str
    credential_type: str
    is_active: bool
    token_expires_at: datetime | None
    last_refreshed_at: datetime | None
    config: dict[str, Any]
    refresh_error_count: int
    last_refresh_error: str | None

    @property
    def has_errors(self) -> bool:
        return self.refresh_error_count > 0


# Predicates

def _refresh_buffer() -> timedelta:
    return timedelta(seconds=get_settings().credential_refresh_buffer_seconds)


def is_token_expired(
    credential: IntegrationCredential,
    now: datetime | None = None,
    buffer: timedelta | None = None,
) -> bool:
    """True if no expiry is recorded or now + buffer is at or past it."""
    if credential.token_expires_at is None:
        return True
    now = now or utcnow()
    buffer = _refresh_buffer() if buffer is None else buffer
    return now + buffer >= credential.token_expires_at


def is_refresh_token_expired(credential: IntegrationCredential, now: datetime | None = None) -> bool:
    """True only if a refresh expiry is recorded and has passed.

    A missing expiry means "unknown, assume valid".
    """
    if credential.refresh_token_expires_at is None:
        return False
    now = now or utcnow()
    return credential.refresh_token_expires_at <= now


def should_deactivate(credential: IntegrationCredential, max_errors: int | None = None) -> bool:
    if max_errors is None:
        max_errors = get_settings().credential_max_refresh_errors
    return credential.refresh_error_count >= max_errors


def credential_state(
    credential: IntegrationCredential,
    now: datetime | None = None,
    buffer: timedelta | None = None,
) -> CredentialState:
    if not credential.is_active or is_refresh_token_expired(credential, now):
        return CredentialState.DEACTIVATED
    if is_token_expired(credential, now, buffer):
        return CredentialState.ACTIVE_NEEDS_REFRESH
    return CredentialState.ACTIVE_FRESH


class KeyedLocks:
    """One asyncio.Lock per key, created on demand."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable):
        async with self.get(key):
            yield


# Serializes refreshes of the same (tenant_id, provider) within the process
refresh_locks = KeyedLocks()


class IntegrationCredentialManager:
    """Stores, refreshes and deactivates integration credentials."""

    def __init__(
        self,
        db: AsyncSession,
        cipher: CredentialCipher | None = None,
        refresh_buffer: timedelta | None = None,
        max_refresh_errors: int | None = None,
        locks: KeyedLocks | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.cipher = cipher or CredentialCipher()
        self.refresh_buffer = (
            refresh_buffer if refresh_buffer is not None
            else timedelta(seconds=settings.credential_refresh_buffer_seconds)
        )
        self.max_refresh_errors = (
            max_refresh_errors if max_refresh_errors is not None
            else settings.credential_max_refresh_errors
        )
        self.locks = locks or refresh_locks

    async def _find(
        self,
        tenant_id: str,
        provider: Provider | str,
    ) -> IntegrationCredential | None:
        result = await self.db.execute(
            select(IntegrationCredential)
            .where(IntegrationCredential.tenant_id == tenant_id)
            .where(IntegrationCredential.provider == Provider(provider).value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, tenant_id: str, provider: Provider | str) -> IntegrationCredential:
        credential = await self._find(tenant_id, provider)
        if credential is None:
            raise CredentialNotFoundError(f"No {Provider(provider).value} credentials found for team {tenant_id}")
        return credential

    async def _require_active(self, tenant_id: str, provider: Provider | str) -> IntegrationCredential:
        credential = await self._require(tenant_id, provider)
        if not credential.is_active:
            raise CredentialDeactivatedError(
                f"{Provider(provider).value} credentials for team {tenant_id} are deactivated. "
                "Re-authentication required."
            )
        return credential

    def is_token_expired(self, credential: IntegrationCredential, now: datetime | None = None) -> bool:
        return is_token_expired(credential, now, self.refresh_buffer)

    def should_deactivate(self, credential: IntegrationCredential) -> bool:
        return should_deactivate(credential, self.max_refresh_errors)

    def state(self, credential: IntegrationCredential, now: datetime | None = None) -> CredentialState:
        return credential_state(credential, now, self.refresh_buffer)

    async def get_credentials(self, tenant_id: str, provider: Provider | str) -> DecryptedCredentials:
        """Decrypted secrets of an active credential."""
        credential = await self._require_active(tenant_id, provider)

        credentials = self.cipher.decrypt_json(credential.credentials_encrypted)

        access_token = None
        if credential.access_token_encrypted:
            try:
                access_token = self.cipher.decrypt(credential.access_token_encrypted)
            except CredentialError:
                # Static credentials may still work; the token will be refreshed
                logger.warning(
                    "Stored access token could not be decrypted",
                    provider=credential.provider,
                    tenant_id=tenant_id,
                )

        return DecryptedCredentials(
            credentials=credentials,
            access_token=access_token,
            config=credential.config or {},
            is_token_expired=self.is_token_expired(credential),
            credential=credential,
        )

    async def save_credentials(
        self,
        tenant_id: str,
        provider: Provider | str,
        credentials: dict[str, Any],
        config: dict[str, Any] | None = None,
        credential_type: CredentialType | str = CredentialType.BASIC,
    ) -> IntegrationCredential:
        """Connect or re-authenticate a provider.

        Reactivates the credential and clears its failure history.
        """
        provider = Provider(provider)
        now = utcnow()
        stmt = dialect_insert(self.db, IntegrationCredential).values(
            tenant_id=tenant_id,
            provider=provider.value,
            credential_type=CredentialType(credential_type).value,
            credentials_encrypted=self.cipher.encrypt_json(credentials),
            config=config or {},
            is_active=True,
            refresh_error_count=0,
            last_refresh_error=None,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "provider"],
            set_={
                "credential_type": stmt.excluded.credential_type,
                "credentials_encrypted": stmt.excluded.credentials_encrypted,
                "config": stmt.excluded.config,
                "is_active": True,
                "refresh_error_count": 0,
                "last_refresh_error": None,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        logger.info("Saved integration credentials", provider=provider.value, tenant_id=tenant_id)
        return await self._require(tenant_id, provider)

    async def save_tokens(
        self,
        tenant_id: str,
        provider: Provider | str,
        tokens: TokenSet,
        now: datetime | None = None,
    ) -> IntegrationCredential:
        """Store new access/refresh tokens and their expiry times."""
        credential = await self._require(tenant_id, provider)
        now = now or utcnow()

        if tokens.access_token:
            credential.access_token_encrypted = self.cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            credential.refresh_token_encrypted = self.cipher.encrypt(tokens.refresh_token)

        token_expiry = tokens.token_expiry(now)
        if token_expiry is not None:
            credential.token_expires_at = token_expiry
        refresh_expiry = tokens.refresh_token_expiry(now)
        if refresh_expiry is not None:
            credential.refresh_token_expires_at = refresh_expiry

        await self.db.commit()
        await self.db.refresh(credential)

        logger.info(
            "Saved integration tokens",
            provider=credential.provider,
            tenant_id=tenant_id,
            token_expires_at=credential.token_expires_at.isoformat() if credential.token_expires_at else None,
        )
        return credential

    async def update_config(
        self,
        tenant_id: str,
        provider: Provider | str,
        config: dict[str, Any],
    ) -> IntegrationCredential:
        """Merge keys into the provider configuration."""
        credential = await self._require(tenant_id, provider)
        credential.config = {**(credential.config or {}), **config}
        await self.db.commit()
        await self.db.refresh(credential)

        logger.info("Updated integration config", provider=credential.provider, tenant_id=tenant_id)
        return credential

    async def record_refresh_success(
        self,
        credential: IntegrationCredential,
        now: datetime | None = None,
    ) -> None:
        """Reset the failure counter and stamp last_refreshed_at. Idempotent.

        Does not reactivate a deactivated credential.
        """
        now = now or utcnow()
        await self.db.execute(
            update(IntegrationCredential)
            .where(IntegrationCredential.id == credential.id)
            .values(
                refresh_error_count=0,
                last_refresh_error=None,
                last_refreshed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(credential)

    async def record_refresh_failure(self, credential: IntegrationCredential, message: Any) -> bool:
        """Count a failed refresh; deactivate at the ceiling.

        The increment and the deactivation happen in one UPDATE so
        concurrent writers cannot lose a count.

        Returns:
            True if the credential is deactivated as a result.
        """
        sanitized = sanitize_error(message) or "Unknown error"
        new_count = IntegrationCredential.refresh_error_count + 1
        await self.db.execute(
            update(IntegrationCredential)
            .where(IntegrationCredential.id == credential.id)
            .values(
                refresh_error_count=new_count,
                last_refresh_error=sanitized,
                is_active=case(
                    (new_count >= self.max_refresh_errors, False),
                    else_=IntegrationCredential.is_active,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(credential)

        deactivated = self.should_deactivate(credential)
        if deactivated:
            logger.error(
                "Integration credentials deactivated after repeated refresh failures",
                provider=credential.provider,
                tenant_id=credential.tenant_id,
                failures=credential.refresh_error_count,
            )
        return deactivated

    async def refresh_token_if_needed(
        self,
        tenant_id: str,
        provider: Provider | str,
        refresher: TokenRefresher,
        now: datetime | None = None,
    ) -> RefreshResult:
        """Return a usable access token, refreshing it first if necessary.

        Raises:
            CredentialNotFoundError: nothing stored for the pair
            CredentialDeactivatedError: credential inactive, or its refresh
                token has expired (the credential is deactivated)
            RefreshFailureError: no refresh token, or the provider refused
        """
        provider = Provider(provider)
        async with self.locks.hold((tenant_id, provider.value)):
            credential = await self._require_active(tenant_id, provider)
            now = now or utcnow()

            if not self.is_token_expired(credential, now):
                return RefreshResult(
                    access_token=self.cipher.decrypt(credential.access_token_encrypted),
                    refreshed=False,
                )

            if not credential.refresh_token_encrypted:
                raise RefreshFailureError(f"No refresh token available for {provider.value} team {tenant_id}")

            if is_refresh_token_expired(credential, now):
                await self.deactivate(tenant_id, provider)
                raise CredentialDeactivatedError(
                    f"Refresh token expired for {provider.value} team {tenant_id}. Re-authentication required."
                )

            try:
                refresh_token = self.cipher.decrypt(credential.refresh_token_encrypted)
                secrets = self.cipher.decrypt_json(credential.credentials_encrypted) or {}
                tokens = await refresher(refresh_token, credential.config or {}, secrets)
            except Exception as e:
                message = sanitize_error(e) or "Unknown error"
                deactivated = await self.record_refresh_failure(credential, message)
                if not deactivated:
                    logger.warning(
                        "Integration token refresh failed",
                        provider=provider.value,
                        tenant_id=tenant_id,
                        attempt=credential.refresh_error_count,
                        error=message,
                    )
                # Original exception is not chained: its text may hold secrets
                raise RefreshFailureError(message, deactivated=deactivated) from None

            await self.save_tokens(tenant_id, provider, tokens, now)
            await self.record_refresh_success(credential, now)

            logger.info("Refreshed integration tokens", provider=provider.value, tenant_id=tenant_id)
            return RefreshResult(access_token=tokens.access_token, refreshed=True)

    async def deactivate(self, tenant_id: str, provider: Provider | str) -> bool:
        """Soft-disable a credential. Returns False if none exists."""
        result = await self.db.execute(
            update(IntegrationCredential)
            .where(IntegrationCredential.tenant_id == tenant_id)
            .where(IntegrationCredential.provider == Provider(provider).value)
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        found = (result.rowcount or 0) > 0
        if found:
            logger.info("Deactivated integration credentials", provider=Provider(provider).value, tenant_id=tenant_id)
        return found

    async def reactivate(self, tenant_id: str, provider: Provider | str) -> IntegrationCredential:
        """Operator action: turn a credential back on with a clean failure count."""
        credential = await self._require(tenant_id, provider)
        credential.is_active = True
        credential.refresh_error_count = 0
        credential.last_refresh_error = None
        await self.db.commit()
        await self.db.refresh(credential)

        logger.info("Reactivated integration credentials", provider=credential.provider, tenant_id=tenant_id)
        return credential

    async def delete(self, tenant_id: str, provider: Provider | str) -> bool:
        """Remove the integration entirely (tenant disconnects the provider)."""
        result = await self.db.execute(
            delete(IntegrationCredential)
            .where(IntegrationCredential.tenant_id == tenant_id)
            .where(IntegrationCredential.provider == Provider(provider).value)
        )
        await self.db.commit()

        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Deleted integration credentials", provider=Provider(provider).value, tenant_id=tenant_id)
        return deleted

    async def list_team_integrations(self, tenant_id: str) -> list[IntegrationSummary]:
        result = await self.db.execute(
            select(IntegrationCredential)
            .where(IntegrationCredential.tenant_id == tenant_id)
            .order_by(IntegrationCredential.provider)
        )
        return [
            IntegrationSummary(
                provider=c.provider,
                credential_type=c.credential_type,
                is_active=c.is_active,
                token_expires_at=c.token_expires_at,
                last_refreshed_at=c.last_refreshed_at,
                config=c.config or {},
                refresh_error_count=c.refresh_error_count,
                last_refresh_error=c.last_refresh_error,
            )
            for c in result.scalars().all()
        ]

    async def find_credentials_needing_refresh(self, now: datetime | None = None) -> list[IntegrationCredential]:
        """Active credentials inside the buffer window with a usable refresh token."""
        now = now or utcnow()
        threshold = now + self.refresh_buffer
        result = await self.db.execute(
            select(IntegrationCredential)
            .where(IntegrationCredential.is_active.is_(True))
            .where(IntegrationCredential.refresh_token_encrypted.is_not(None))
            .where(or_(
                IntegrationCredential.token_expires_at.is_(None),
                IntegrationCredential.token_expires_at <= threshold,
            ))
            .where(or_(
                IntegrationCredential.refresh_token_expires_at.is_(None),
                IntegrationCredential.refresh_token_expires_at > now,
            ))
        )
        return list(result.scalars().all())

    async def deactivate_expired_refresh_tokens(self, now: datetime | None = None) -> int:
        """Deactivate active credentials whose refresh token has expired.

        These can never be refreshed again and would otherwise stay
        active without being picked up by the sweep.
        """
        now = now or utcnow()
        result = await self.db.execute(
            update(IntegrationCredential)
            .where(IntegrationCredential.is_active.is_(True))
            .where(IntegrationCredential.refresh_token_expires_at.is_not(None))
            .where(IntegrationCredential.refresh_token_expires_at <= now)
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        count = result.rowcount or 0
        if count:
            logger.warning("Deactivated credentials with expired refresh tokens", count=count)
        return count
