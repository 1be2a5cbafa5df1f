"""Token revocation ledger.

Two tiers of revocation are kept:

- per-token entries keyed by the token's ``jti`` claim
- per-user cutoffs: every token issued at or before the cutoff is invalid

Entries are only ever removed by purge_expired, and only once the
token(s) they cover can no longer be replayed.
"""

from datetime import datetime, timedelta

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.config import get_settings
from teamguard.core.logging import get_logger
from teamguard.database import dialect_insert, utcnow
from teamguard.models import RevokedToken, UserRevocationCutoff, RevocationReason

logger = get_logger(__name__)


class RevocationLedger:
    """Durable store of revoked tokens and per-user revocation cutoffs."""

    def __init__(self, db: AsyncSession, token_lifetime: timedelta | None = None):
        self.db = db
        if token_lifetime is None:
            token_lifetime = timedelta(days=get_settings().jwt_expiration_days)
        self.token_lifetime = token_lifetime

    async def revoke(
        self,
        token_id: str,
        principal_id: str,
        natural_expiry: datetime,
        reason: RevocationReason | str = RevocationReason.LOGOUT,
    ) -> bool:
        """Revoke a single token. Idempotent.

        Returns:
            True if a new entry was written, False if the token was
            already revoked.
        """
        reason = RevocationReason(reason)
        stmt = (
            dialect_insert(self.db, RevokedToken)
            .values(
                jti=token_id,
                principal_id=principal_id,
                revoked_at=utcnow(),
                natural_expiry=natural_expiry,
                reason=reason.value,
            )
            .on_conflict_do_nothing(index_elements=["jti"])
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        created = result.rowcount == 1
        logger.info(
            "Token revoked" if created else "Token already revoked",
            token_id=token_id,
            principal_id=principal_id,
            reason=reason.value,
        )
        return created

    async def revoke_all_for_principal(
        self,
        principal_id: str,
        reason: RevocationReason | str = RevocationReason.SECURITY_REVOKE,
        now: datetime | None = None,
    ) -> datetime:
        """Invalidate every token issued to the principal up to now.

        Returns:
            The cutoff timestamp.
        """
        reason = RevocationReason(reason)
        now = now or utcnow()
        natural_expiry = now + self.token_lifetime

        stmt = dialect_insert(self.db, UserRevocationCutoff).values(
            principal_id=principal_id,
            cutoff_at=now,
            natural_expiry=natural_expiry,
            reason=reason.value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["principal_id"],
            set_={
                "cutoff_at": stmt.excluded.cutoff_at,
                "natural_expiry": stmt.excluded.natural_expiry,
                "reason": stmt.excluded.reason,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        logger.info(
            "All tokens revoked for principal",
            principal_id=principal_id,
            reason=reason.value,
        )
        return now

    async def get_cutoff(self, principal_id: str) -> datetime | None:
        """Most recent revoke-all cutoff for the principal, if any."""
        result = await self.db.execute(
            select(UserRevocationCutoff.cutoff_at)
            .where(UserRevocationCutoff.principal_id == principal_id)
        )
        return result.scalar_one_or_none()

    async def is_revoked(
        self,
        token_id: str | None,
        principal_id: str,
        issued_at: datetime | None,
        now: datetime | None = None,
    ) -> bool:
        """Two-tier revocation check.

        Tokens without a jti predate revocation support and are never
        considered revoked. A token without an issued-at time cannot be
        proven to postdate a cutoff, so a cutoff revokes it.
        """
        if not token_id:
            return False
        now = now or utcnow()

        result = await self.db.execute(
            select(RevokedToken.id)
            .where(RevokedToken.jti == token_id)
            .where(RevokedToken.principal_id == principal_id)
            .where(RevokedToken.natural_expiry > now)
        )
        if result.first() is not None:
            return True

        cutoff = await self.get_cutoff(principal_id)
        if cutoff is None:
            return False
        if issued_at is None:
            return True
        return issued_at <= cutoff

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every entry whose natural expiry is at or before now.

        Returns:
            Number of entries removed across both tiers.
        """
        now = now or utcnow()

        tokens = await self.db.execute(
            delete(RevokedToken).where(RevokedToken.natural_expiry <= now)
        )
        cutoffs = await self.db.execute(
            delete(UserRevocationCutoff).where(UserRevocationCutoff.natural_expiry <= now)
        )
        await self.db.commit()

        count = (tokens.rowcount or 0) + (cutoffs.rowcount or 0)
        logger.info(
            "Purged expired revocations",
            token_entries=tokens.rowcount or 0,
            cutoffs=cutoffs.rowcount or 0,
        )
        return count
