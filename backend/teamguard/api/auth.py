"""Login, session and token revocation API."""

from datetime import datetime, timezone
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.auth.jwt import (
    clear_auth_cookie,
    create_access_token,
    decode_token,
    get_auth_context,
    set_auth_cookie,
)
from teamguard.auth.passwords import PasswordVerifier, get_password_verifier
from teamguard.core.errors import InvalidCredentialsError, InvalidTokenError
from teamguard.core.logging import get_logger
from teamguard.core.permissions import PermissionEvaluator
from teamguard.core.principal import AuthContext
from teamguard.core.revocation import RevocationLedger
from teamguard.database import get_db, utcnow
from teamguard.models import Capability, RevocationReason, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class PrincipalResponse(BaseModel):
    """The authenticated principal."""
    id: str
    role: str
    tenant_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    token_expires_at: datetime | None = None


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    """Issued token plus the principal it identifies.

    The token is also set as an httpOnly cookie.
    """
    access_token: str
    token_type: str = "bearer"
    principal: PrincipalResponse


class RevokeTokenRequest(BaseModel):
    """Token to revoke; the calling token when omitted."""
    token: str | None = Field(default=None, description="A token previously issued to the caller")


class RevokeAllRequest(BaseModel):
    reason: Literal["password_change", "security_revoke"] = "security_revoke"


class RevokeResponse(BaseModel):
    revoked: bool
    message: str


class RevokeAllResponse(BaseModel):
    user_id: str
    revoked_before: datetime
    reason: str


@router.post("/login", response_model=LoginResponse)
async def login(
    data: LoginRequest,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    verify_password: Annotated[PasswordVerifier, Depends(get_password_verifier)],
):
    """Exchange email and password for an access token."""
    email = data.email.strip().lower()
    result = await db.execute(select(User).where(func.lower(User.email) == email))
    user = result.scalar_one_or_none()

    failure = None
    if user is None:
        failure = "unknown_email"
    elif not user.is_active:
        failure = "inactive"
    elif not verify_password(data.password, user.password_hash):
        failure = "bad_password"
    if failure:
        # Same 401 for every case; the reason is only logged
        logger.info("Login rejected", failure=failure, user_id=user.id if user else None)
        raise InvalidCredentialsError("Invalid credentials")

    user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)

    token = create_access_token(user)
    set_auth_cookie(response, token)
    claims = decode_token(token)

    logger.info("User logged in", user_id=user.id, tenant_id=user.tenant_id)
    return LoginResponse(
        access_token=token,
        principal=PrincipalResponse(
            id=user.id,
            role=user.role,
            tenant_id=user.tenant_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            token_expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        ),
    )


@router.get("/me", response_model=PrincipalResponse)
async def get_me(context: Annotated[AuthContext, Depends(get_auth_context)]):
    """Return the resolved principal (no secret fields)."""
    principal = context.principal
    return PrincipalResponse(
        id=principal.id,
        role=principal.role.value,
        tenant_id=principal.tenant_id,
        email=principal.email,
        first_name=principal.first_name,
        last_name=principal.last_name,
        token_expires_at=context.expires_at,
    )


@router.post("/logout", response_model=RevokeResponse)
async def logout(
    response: Response,
    context: Annotated[AuthContext, Depends(get_auth_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke the calling token and clear the auth cookie."""
    revoked = False
    if context.token_id and context.expires_at:
        await RevocationLedger(db).revoke(
            context.token_id,
            context.principal.id,
            context.expires_at,
            RevocationReason.LOGOUT,
        )
        revoked = True

    clear_auth_cookie(response)
    return RevokeResponse(revoked=revoked, message="Logged out")


@router.post("/revoke", response_model=RevokeResponse)
async def revoke_token(
    data: RevokeTokenRequest,
    context: Annotated[AuthContext, Depends(get_auth_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke one of the caller's own tokens."""
    principal = context.principal

    if data.token is None:
        token_id, expires_at = context.token_id, context.expires_at
    else:
        try:
            claims = decode_token(data.token)
        except InvalidTokenError:
            # Expired or forged tokens cannot be replayed anyway
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token is not valid")
        if claims.get("sub") != principal.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token belongs to another user")
        token_id = claims.get("jti")
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)

    if not token_id or expires_at is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Token has no id and cannot be revoked individually; use revoke-all",
        )

    created = await RevocationLedger(db).revoke(token_id, principal.id, expires_at, RevocationReason.LOGOUT)
    return RevokeResponse(
        revoked=True,
        message="Token revoked" if created else "Token was already revoked",
    )


@router.post("/revoke-all", response_model=RevokeAllResponse)
async def revoke_all(
    response: Response,
    data: RevokeAllRequest,
    context: Annotated[AuthContext, Depends(get_auth_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Invalidate every token issued to the caller so far, including this one."""
    cutoff = await RevocationLedger(db).revoke_all_for_principal(context.principal.id, data.reason)
    clear_auth_cookie(response)
    return RevokeAllResponse(user_id=context.principal.id, revoked_before=cutoff, reason=data.reason)


@router.post("/users/{user_id}/revoke-all", response_model=RevokeAllResponse)
async def admin_revoke_all(
    user_id: str,
    context: Annotated[AuthContext, Depends(get_auth_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Invalidate every token of another user.

    Super admins may target anyone; otherwise the caller needs
    user_management and the target must be in the caller's team.
    """
    principal = context.principal

    # Permission first: unauthorized callers get the same 403 for every id
    decision = await PermissionEvaluator(db).check(principal, Capability.USER_MANAGEMENT)
    decision.raise_for_denial()

    result = await db.execute(select(User).where(User.id == user_id))
    target = result.scalar_one_or_none()
    if target is None or (not principal.is_super_admin and target.tenant_id != principal.tenant_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    cutoff = await RevocationLedger(db).revoke_all_for_principal(target.id, RevocationReason.ADMIN_REVOKE)
    logger.info("Administrative token revocation", target_user_id=target.id, revoked_by=principal.id)
    return RevokeAllResponse(
        user_id=target.id,
        revoked_before=cutoff,
        reason=RevocationReason.ADMIN_REVOKE.value,
    )
