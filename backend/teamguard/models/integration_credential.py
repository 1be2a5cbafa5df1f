"""Per-team credentials for third-party data providers."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import String, Boolean, Integer, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from teamguard.database import Base, GUID, JSONType, UTCDateTime, utcnow


class Provider(str, Enum):
    """Supported integration providers."""

    PRESTO = "presto"
    HUDL = "hudl"
    SYNERGY = "synergy"


class CredentialType(str, Enum):
    """How the provider authenticates us."""

    OAUTH2 = "oauth2"
    BASIC = "basic"
    API_KEY = "api_key"


class IntegrationCredential(Base):
    """One connection between a team and a provider.

    Secrets are stored only as ciphertext. Deactivation is soft: the row
    stays while the team keeps the integration.
    """

    __tablename__ = "integration_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_integration_credential"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(GUID(), ForeignKey("teams.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    credential_type: Mapped[str] = mapped_column(String(16), nullable=False, default=CredentialType.BASIC.value)

    # Encrypted JSON with username/password or API key
    credentials_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    refresh_token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Consecutive refresh failures; reset only by a successful refresh
    refresh_error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Sanitized before it is written
    last_refresh_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    # Provider-specific configuration (token_url, client_id, season ids, ...)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<IntegrationCredential {self.provider} tenant={self.tenant_id}>"
