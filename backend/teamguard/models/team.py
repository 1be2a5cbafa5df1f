"""Team model: the tenant boundary for every protected resource.

Each team owns its users, permission grants, integration credentials
and sync history. Nothing crosses a team boundary.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from teamguard.database import Base, GUID, UTCDateTime, utcnow


class Team(Base):
    """A team (tenant)."""

    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(256), nullable=False)

    # URL-friendly unique identifier (e.g., "river-hawks")
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    users: Mapped[list["User"]] = relationship("User", back_populates="team", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Team {self.slug}>"
