"""Revocation ledger models for bearer token invalidation."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from teamguard.database import Base, GUID, UTCDateTime, utcnow


class RevocationReason(str, Enum):
    """Why a token (or every token of a user) was revoked."""

    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    ADMIN_REVOKE = "admin_revoke"
    SECURITY_REVOKE = "security_revoke"


class RevokedToken(Base):
    """Stores revoked JWT token identifiers (jti claims).

    Provides persistent token revocation that survives server restarts,
    unlike in-memory sets. An entry may only be purged once its
    natural_expiry has passed, because the token itself can no longer
    be replayed after that point.
    """

    __tablename__ = "revoked_tokens"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    jti: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    principal_id: Mapped[str] = mapped_column(GUID(), nullable=False, index=True)
    revoked_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    natural_expiry: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)

    def __repr__(self) -> str:
        return f"<RevokedToken jti={self.jti}>"


class UserRevocationCutoff(Base):
    """Per-user "revoke everything issued so far" marker.

    Any token whose issued-at time is at or before cutoff_at is invalid.
    natural_expiry is cutoff_at plus the maximum token lifetime: after
    that instant no token issued before the cutoff can still be live.
    """

    __tablename__ = "user_revocation_cutoffs"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    principal_id: Mapped[str] = mapped_column(GUID(), nullable=False, unique=True, index=True)
    cutoff_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    natural_expiry: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)

    def __repr__(self) -> str:
        return f"<UserRevocationCutoff principal={self.principal_id} at={self.cutoff_at}>"
