"""User account model."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import String, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from teamguard.database import Base, GUID, UTCDateTime, utcnow


class Role(str, Enum):
    """Account roles, from most to least privileged."""

    SUPER_ADMIN = "super_admin"
    HEAD_COACH = "head_coach"
    ASSISTANT_COACH = "assistant_coach"


class User(Base):
    """A coach or administrator belonging to a team."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(GUID(), ForeignKey("teams.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=Role.ASSISTANT_COACH.value)

    # Produced and checked by the external password primitive; never leaves this model.
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    team: Mapped["Team"] = relationship("Team", back_populates="users")

    def __repr__(self) -> str:
        return f"<User {self.email}>"
