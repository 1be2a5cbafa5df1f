"""Fine-grained, team-scoped permission grants."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import String, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from teamguard.database import Base, GUID, UTCDateTime, utcnow


class Capability(str, Enum):
    """Named, enumerable permission units."""

    # Depth chart
    DEPTH_CHART_VIEW = "depth_chart_view"
    DEPTH_CHART_CREATE = "depth_chart_create"
    DEPTH_CHART_EDIT = "depth_chart_edit"
    DEPTH_CHART_DELETE = "depth_chart_delete"
    DEPTH_CHART_MANAGE_POSITIONS = "depth_chart_manage_positions"
    PLAYER_ASSIGN = "player_assign"
    PLAYER_UNASSIGN = "player_unassign"

    # Schedules
    SCHEDULE_VIEW = "schedule_view"
    SCHEDULE_CREATE = "schedule_create"
    SCHEDULE_EDIT = "schedule_edit"
    SCHEDULE_DELETE = "schedule_delete"

    # Reports
    REPORTS_VIEW = "reports_view"
    REPORTS_CREATE = "reports_create"
    REPORTS_EDIT = "reports_edit"
    REPORTS_DELETE = "reports_delete"

    # Team administration
    TEAM_SETTINGS = "team_settings"
    TEAM_MANAGEMENT = "team_management"
    USER_MANAGEMENT = "user_management"

    # System profile (destructive)
    SYSTEM_PROFILE_DELETE = "system_profile_delete"


class PermissionGrant(Base):
    """A principal holds a capability within a team, optionally until expires_at.

    A grant whose expires_at has passed is treated as absent without
    being deleted; the maintenance job removes it later.
    """

    __tablename__ = "permission_grants"
    __table_args__ = (
        UniqueConstraint("principal_id", "tenant_id", "capability", name="uq_permission_grant"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    principal_id: Mapped[str] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(GUID(), ForeignKey("teams.id"), nullable=False, index=True)
    capability: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    granted_by: Mapped[str | None] = mapped_column(GUID(), ForeignKey("users.id"), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionGrant {self.capability} principal={self.principal_id}>"
