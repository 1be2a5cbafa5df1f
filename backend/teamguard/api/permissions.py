"""Permission grant management API.

All routes are scoped to the caller's team.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.api.guards import require_permission
from teamguard.auth.jwt import get_current_principal
from teamguard.core.permissions import HEAD_COACH_DENIED, CheckMode, GrantManager, PermissionEvaluator
from teamguard.core.principal import Principal
from teamguard.database import get_db
from teamguard.models import Capability, PermissionGrant, User

router = APIRouter(prefix="/api/permissions", tags=["permissions"])

require_user_management = require_permission(Capability.USER_MANAGEMENT)


# =============================================================================
# Request/Response Models
# =============================================================================

class GrantResponse(BaseModel):
    """A stored permission grant."""
    id: str
    user_id: str
    capability: str
    is_granted: bool
    granted_by: str | None
    granted_at: datetime
    expires_at: datetime | None
    notes: str | None

    @classmethod
    def from_grant(cls, grant: PermissionGrant) -> "GrantResponse":
        return cls(
            id=grant.id,
            user_id=grant.principal_id,
            capability=grant.capability,
            is_granted=grant.is_granted,
            granted_by=grant.granted_by,
            granted_at=grant.granted_at,
            expires_at=grant.expires_at,
            notes=grant.notes,
        )


class GrantRequest(BaseModel):
    """Grant a capability to a user in the caller's team."""
    user_id: str
    capability: Capability
    expires_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)


class CheckRequest(BaseModel):
    capabilities: list[Capability] = Field(..., min_length=1)
    mode: CheckMode = CheckMode.SINGLE


class CheckResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    missing: list[str] = Field(default_factory=list)


class CapabilityInfo(BaseModel):
    capability: str
    head_coach_allowed: bool


# =============================================================================
# Routes
# =============================================================================

@router.get("/capabilities", response_model=list[CapabilityInfo])
async def list_capabilities(principal: Annotated[Principal, Depends(get_current_principal)]):
    """Every capability that can be granted."""
    return [
        CapabilityInfo(capability=c.value, head_coach_allowed=c not in HEAD_COACH_DENIED)
        for c in Capability
    ]


@router.get("/me", response_model=list[GrantResponse])
async def list_my_grants(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Live grants held by the caller."""
    grants = await GrantManager(db).list_grants(principal.tenant_id, principal_id=principal.id)
    return [GrantResponse.from_grant(g) for g in grants]


@router.post("/check", response_model=CheckResponse)
async def check_permissions(
    data: CheckRequest,
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Evaluate capabilities for the caller without performing an action."""
    try:
        decision = await PermissionEvaluator(db).check(principal, data.capabilities, data.mode)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return CheckResponse(
        allowed=decision.allowed,
        reason=decision.reason.value if decision.reason else None,
        missing=[c.value for c in decision.missing],
    )


@router.get("", response_model=list[GrantResponse])
async def list_team_grants(
    principal: Annotated[Principal, Depends(require_user_management)],
    db: Annotated[AsyncSession, Depends(get_db)],
    include_expired: bool = False,
):
    """All grants in the caller's team."""
    grants = await GrantManager(db).list_grants(principal.tenant_id, include_expired=include_expired)
    return [GrantResponse.from_grant(g) for g in grants]


@router.post("", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_permission(
    data: GrantRequest,
    principal: Annotated[Principal, Depends(require_user_management)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Grant (or re-grant) a capability to a team member."""
    result = await db.execute(
        select(User.id)
        .where(User.id == data.user_id)
        .where(User.tenant_id == principal.tenant_id)
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found in team")

    grant = await GrantManager(db).grant(
        principal_id=data.user_id,
        tenant_id=principal.tenant_id,
        capability=data.capability,
        granted_by=principal.id,
        expires_at=data.expires_at,
        notes=data.notes,
    )
    return GrantResponse.from_grant(grant)


@router.delete("/{user_id}/{capability}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_permission(
    user_id: str,
    capability: Capability,
    principal: Annotated[Principal, Depends(require_user_management)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Remove a grant from a team member."""
    removed = await GrantManager(db).revoke(user_id, principal.tenant_id, capability)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Permission not found")
