"""Bearer token issuance, verification and principal resolution."""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import jwt
from fastapi import Depends, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.config import get_settings
from teamguard.core.errors import (
    InvalidTokenError,
    NoTokenError,
    PrincipalNotFoundError,
    TokenRevokedError,
)
from teamguard.core.logging import get_logger, set_user_context
from teamguard.core.principal import AuthContext, Principal
from teamguard.core.revocation import RevocationLedger
from teamguard.database import get_db, utcnow
from teamguard.models import User

logger = get_logger(__name__)


def create_access_token(user: User, now: datetime | None = None) -> str:
    """Create a signed access token for a user session.

    iat is a float so a revoke-all cutoff taken in the same second as a
    later login does not invalidate the new token.
    """
    settings = get_settings()
    now = now or utcnow()
    payload = {
        "sub": str(user.id),
        "tenant": str(user.tenant_id),
        "role": user.role,
        "jti": secrets.token_urlsafe(24),
        "iat": now.timestamp(),
        "exp": now + timedelta(days=settings.jwt_expiration_days),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    """Verify signature and expiry.

    Raises:
        InvalidTokenError: for malformed, expired or wrongly signed tokens
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(f"Token rejected: {type(e).__name__}")


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise InvalidTokenError("Token has a malformed timestamp claim")


def extract_token(cookie_value: str | None, authorization_header: str | None) -> str | None:
    """Pick the bearer token from the request.

    The httpOnly cookie wins over the Authorization header.
    """
    if cookie_value:
        return cookie_value
    if authorization_header:
        scheme, _, credentials = authorization_header.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return None


def set_auth_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=token,
        max_age=settings.jwt_expiration_days * 24 * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        domain=settings.cookie_domain,
        path="/",
    )


def clear_auth_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.auth_cookie_name,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        domain=settings.cookie_domain,
        path="/",
    )


class PrincipalResolver:
    """Turns a raw bearer token into an authenticated principal."""

    def __init__(self, db: AsyncSession, ledger: RevocationLedger | None = None):
        self.db = db
        self.ledger = ledger or RevocationLedger(db)

    async def resolve(self, token: str | None, now: datetime | None = None) -> AuthContext:
        """Authenticate a token.

        Raises:
            NoTokenError: no token supplied
            InvalidTokenError: bad signature, expired, malformed, or revoked
            PrincipalNotFoundError: no live account for the subject
        """
        if not token:
            raise NoTokenError("No token provided")

        claims = decode_token(token)

        subject = claims.get("sub")
        try:
            principal_id = str(uuid.UUID(str(subject)))
        except ValueError:
            raise InvalidTokenError("Token subject is not a valid id")

        token_id = claims.get("jti")
        issued_at = _timestamp(claims.get("iat"))
        expires_at = _timestamp(claims.get("exp"))

        # Tokens without a jti predate revocation and skip both tiers
        if token_id and await self.ledger.is_revoked(token_id, principal_id, issued_at, now):
            raise TokenRevokedError("Token has been revoked")

        result = await self.db.execute(
            select(User)
            .where(User.id == principal_id)
            .where(User.is_active.is_(True))
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise PrincipalNotFoundError("No active account for token subject")

        return AuthContext(
            principal=Principal.from_user(user),
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )


async def get_auth_context(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AuthContext:
    """Authenticate the request and attach the result to request.state."""
    token = extract_token(
        request.cookies.get(get_settings().auth_cookie_name),
        request.headers.get("Authorization"),
    )
    try:
        context = await PrincipalResolver(db).resolve(token)
    except (NoTokenError, InvalidTokenError, PrincipalNotFoundError) as e:
        logger.info(
            "Authentication failed",
            failure=type(e).__name__,
            detail=str(e),
            path=request.url.path,
        )
        raise

    request.state.auth = context
    set_user_context(user_id=context.principal.id, tenant_id=context.principal.tenant_id)
    return context


async def get_current_principal(
    context: Annotated[AuthContext, Depends(get_auth_context)],
) -> Principal:
    """Get the authenticated principal for the request."""
    return context.principal
