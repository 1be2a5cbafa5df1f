"""Layered permission evaluation and grant management.

Evaluation order:
1. super_admin is always allowed.
2. head_coach is allowed for anything outside HEAD_COACH_DENIED,
   without consulting stored grants.
3. Everyone else needs a live PermissionGrant in their own tenant.

An expired grant is treated as absent, but produces a different denial
reason than a capability that was never granted.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.core.errors import (
    EvaluationError,
    PermissionDeniedError,
    PermissionExpiredError,
)
from teamguard.core.logging import get_logger
from teamguard.core.principal import Principal
from teamguard.database import dialect_insert, utcnow
from teamguard.models import Capability, PermissionGrant, Role

logger = get_logger(__name__)

# Destructive operations a head coach may never perform
HEAD_COACH_DENIED: frozenset[Capability] = frozenset({Capability.SYSTEM_PROFILE_DELETE})


class CheckMode(str, Enum):
    """How multiple requested capabilities combine."""
    SINGLE = "single"
    ANY = "any"
    ALL = "all"


class DenialReason(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_EXPIRED = "permission_expired"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check."""
    allowed: bool
    capabilities: tuple[Capability, ...]
    mode: CheckMode
    reason: DenialReason | None = None
    missing: tuple[Capability, ...] = field(default_factory=tuple)

    def raise_for_denial(self) -> None:
        """Raise the error matching the denial reason, if denied."""
        if self.allowed:
            return
        names = [c.value for c in self.capabilities]
        if self.reason == DenialReason.EVALUATION_ERROR:
            raise EvaluationError("Permission evaluation failed")
        if self.reason == DenialReason.PERMISSION_EXPIRED:
            raise PermissionExpiredError("Permission has expired", names)
        raise PermissionDeniedError("Insufficient permissions", names)


def normalize_capabilities(
    capabilities: Capability | str | Iterable[Capability | str],
    mode: CheckMode | str = CheckMode.SINGLE,
) -> tuple[tuple[Capability, ...], CheckMode]:
    """Validate requested capabilities against the fixed set."""
    mode = CheckMode(mode)
    if isinstance(capabilities, (str, Capability)):
        capabilities = [capabilities]

    requested = tuple(dict.fromkeys(Capability(c) for c in capabilities))
    if not requested:
        raise ValueError("At least one capability is required")
    if mode == CheckMode.SINGLE and len(requested) != 1:
        raise ValueError("Single mode takes exactly one capability; use ANY or ALL")
    return requested, mode


class PermissionEvaluator:
    """Decides ALLOW/DENY for a principal. Performs no writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check(
        self,
        principal: Principal,
        capabilities: Capability | str | Iterable[Capability | str],
        mode: CheckMode | str = CheckMode.SINGLE,
        now: datetime | None = None,
    ) -> PermissionDecision:
        requested, mode = normalize_capabilities(capabilities, mode)

        if principal.role == Role.SUPER_ADMIN:
            return PermissionDecision(True, requested, mode)

        if principal.role == Role.HEAD_COACH:
            permitted = {c for c in requested if c not in HEAD_COACH_DENIED}
            return self._combine(requested, mode, permitted, expired=set())

        now = now or utcnow()
        try:
            result = await self.db.execute(
                select(PermissionGrant.capability, PermissionGrant.expires_at)
                .where(PermissionGrant.principal_id == principal.id)
                .where(PermissionGrant.tenant_id == principal.tenant_id)
                .where(PermissionGrant.capability.in_([c.value for c in requested]))
                .where(PermissionGrant.is_granted.is_(True))
            )
            permitted: set[Capability] = set()
            expired: set[Capability] = set()
            for capability, expires_at in result.all():
                if expires_at is not None and expires_at <= now:
                    expired.add(Capability(capability))
                else:
                    permitted.add(Capability(capability))
        except Exception:
            logger.error(
                "Permission evaluation failed",
                principal_id=principal.id,
                capabilities=[c.value for c in requested],
                mode=mode.value,
                exc_info=True,
            )
            return PermissionDecision(False, requested, mode, DenialReason.EVALUATION_ERROR, requested)

        decision = self._combine(requested, mode, permitted, expired)
        if not decision.allowed:
            logger.info(
                "Permission denied",
                principal_id=principal.id,
                capabilities=[c.value for c in requested],
                mode=mode.value,
                reason=decision.reason.value,
            )
        return decision

    @staticmethod
    def _combine(
        requested: tuple[Capability, ...],
        mode: CheckMode,
        permitted: set[Capability],
        expired: set[Capability],
    ) -> PermissionDecision:
        missing = tuple(c for c in requested if c not in permitted)
        if mode == CheckMode.ALL:
            allowed = not missing
        else:
            allowed = len(missing) < len(requested)

        if allowed:
            return PermissionDecision(True, requested, mode)

        reason = DenialReason.PERMISSION_DENIED
        if any(c in expired for c in missing):
            reason = DenialReason.PERMISSION_EXPIRED
        return PermissionDecision(False, requested, mode, reason, missing)

    async def require(
        self,
        principal: Principal,
        capabilities: Capability | str | Iterable[Capability | str],
        mode: CheckMode | str = CheckMode.SINGLE,
    ) -> None:
        """Like check(), but raises on denial."""
        decision = await self.check(principal, capabilities, mode)
        decision.raise_for_denial()


class GrantManager:
    """Create, revoke and list PermissionGrant rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def grant(
        self,
        principal_id: str,
        tenant_id: str,
        capability: Capability | str,
        granted_by: str | None = None,
        expires_at: datetime | None = None,
        notes: str | None = None,
    ) -> PermissionGrant:
        """Grant a capability, replacing any existing grant for the same tuple."""
        capability = Capability(capability)
        now = utcnow()
        stmt = dialect_insert(self.db, PermissionGrant).values(
            principal_id=principal_id,
            tenant_id=tenant_id,
            capability=capability.value,
            is_granted=True,
            granted_by=granted_by,
            granted_at=now,
            expires_at=expires_at,
            notes=notes,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["principal_id", "tenant_id", "capability"],
            set_={
                "is_granted": True,
                "granted_by": stmt.excluded.granted_by,
                "granted_at": stmt.excluded.granted_at,
                "expires_at": stmt.excluded.expires_at,
                "notes": stmt.excluded.notes,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        logger.info(
            "Permission granted",
            principal_id=principal_id,
            capability=capability.value,
            granted_by=granted_by,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        grant = await self.get_grant(principal_id, tenant_id, capability)
        return grant

    async def get_grant(
        self,
        principal_id: str,
        tenant_id: str,
        capability: Capability | str,
    ) -> PermissionGrant | None:
        result = await self.db.execute(
            select(PermissionGrant)
            .where(PermissionGrant.principal_id == principal_id)
            .where(PermissionGrant.tenant_id == tenant_id)
            .where(PermissionGrant.capability == Capability(capability).value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def revoke(
        self,
        principal_id: str,
        tenant_id: str,
        capability: Capability | str,
    ) -> bool:
        """Remove a grant. Returns False if there was nothing to remove."""
        capability = Capability(capability)
        result = await self.db.execute(
            delete(PermissionGrant)
            .where(PermissionGrant.principal_id == principal_id)
            .where(PermissionGrant.tenant_id == tenant_id)
            .where(PermissionGrant.capability == capability.value)
        )
        await self.db.commit()

        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Permission revoked", principal_id=principal_id, capability=capability.value)
        return removed

    async def list_grants(
        self,
        tenant_id: str,
        principal_id: str | None = None,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> list[PermissionGrant]:
        """Grants within a tenant, optionally for one principal."""
        query = select(PermissionGrant).where(PermissionGrant.tenant_id == tenant_id)
        if principal_id is not None:
            query = query.where(PermissionGrant.principal_id == principal_id)
        if not include_expired:
            now = now or utcnow()
            query = query.where(
                or_(PermissionGrant.expires_at.is_(None), PermissionGrant.expires_at > now)
            )
        query = query.order_by(PermissionGrant.granted_at.desc())

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def purge_expired_grants(self, now: datetime | None = None) -> int:
        """Delete grants whose expiry has passed. Returns the count."""
        now = now or utcnow()
        result = await self.db.execute(
            delete(PermissionGrant)
            .where(PermissionGrant.expires_at.is_not(None))
            .where(PermissionGrant.expires_at <= now)
        )
        await self.db.commit()

        count = result.rowcount or 0
        logger.info("Purged expired permission grants", count=count)
        return count
