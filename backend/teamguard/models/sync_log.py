"""Append-only journal of external sync attempts."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import String, Integer, Text, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from teamguard.database import Base, GUID, JSONType, UTCDateTime, utcnow


class SyncType(str, Enum):
    """What was synchronized."""

    ROSTER = "roster"
    SCHEDULE = "schedule"
    STATS = "stats"
    TEAM_RECORD = "team_record"
    SEASON_STATS = "season_stats"
    CAREER_STATS = "career_stats"
    FULL = "full"
    PLAYER_DETAILS = "player_details"
    PLAYER_PHOTOS = "player_photos"
    PRESS_RELEASES = "press_releases"
    HISTORICAL_STATS = "historical_stats"
    HISTORICAL_SEASON_STATS = "historical_season_stats"
    PLAYER_VIDEOS = "player_videos"
    LIVE_STATS = "live_stats"


class SyncStatus(str, Enum):
    """Lifecycle of a sync record."""

    STARTED = "started"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class SourceSystem(str, Enum):
    """Where the synced data came from."""

    PRESTO = "presto"
    MANUAL = "manual"
    OTHER = "other"


class SyncLog(Base):
    """One external-sync attempt.

    Created at start and updated once at completion. api_endpoint,
    request_params, error_message and item_errors hold sanitized values only.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_tenant_type_started", "tenant_id", "sync_type", "started_at"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(GUID(), ForeignKey("teams.id"), nullable=False, index=True)
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    source_system: Mapped[str] = mapped_column(String(16), nullable=False, default=SourceSystem.PRESTO.value)
    api_endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.STARTED.value, index=True)
    initiated_by: Mapped[str | None] = mapped_column(GUID(), ForeignKey("users.id"), nullable=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    request_params: Mapped[dict[str, Any] | None] = mapped_column(JSONType(), nullable=True)

    items_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    response_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType(), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncLog {self.sync_type} {self.status}>"
