"""Audit journal of external sync attempts.

Endpoints, request parameters and error text are sanitized here, on
the way in, so nothing unsanitized is ever written to sync_logs.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.core.errors import SyncRecordClosedError, SyncRecordNotFoundError
from teamguard.core.logging import get_logger
from teamguard.core.sanitizer import (
    sanitize_endpoint,
    sanitize_error,
    sanitize_item_errors,
    sanitize_params,
)
from teamguard.database import utcnow
from teamguard.models import SyncLog, SyncStatus, SyncType, SourceSystem

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50


@dataclass
class SyncResults:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    summary: dict[str, Any] | None = None
    item_errors: list[dict[str, Any]] | None = None


def derive_status(results: SyncResults) -> SyncStatus:
    """completed without failures, partial with some successes, failed otherwise."""
    if results.failed <= 0:
        return SyncStatus.COMPLETED
    if results.created > 0 or results.updated > 0:
        return SyncStatus.PARTIAL
    return SyncStatus.FAILED


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


class SyncJournal:
    """Writes and queries SyncLog records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get(self, record_id: str) -> SyncLog:
        record = await self.db.get(SyncLog, record_id)
        if record is None:
            raise SyncRecordNotFoundError(f"SyncLog {record_id} not found")
        return record

    async def _get_open(self, record_id: str) -> SyncLog:
        """A record that has not been closed yet; records close exactly once."""
        record = await self._get(record_id)
        if record.status != SyncStatus.STARTED.value:
            raise SyncRecordClosedError(f"SyncLog {record_id} is already {record.status}")
        return record

    async def log_start(
        self,
        tenant_id: str,
        sync_type: SyncType | str,
        user_id: str | None = None,
        endpoint: str | None = None,
        params: dict[str, Any] | None = None,
        source_system: SourceSystem | str = SourceSystem.PRESTO,
    ) -> str:
        """Record the start of a sync. Returns the record id."""
        record = SyncLog(
            tenant_id=tenant_id,
            sync_type=SyncType(sync_type).value,
            source_system=SourceSystem(source_system).value,
            api_endpoint=sanitize_endpoint(endpoint),
            status=SyncStatus.STARTED.value,
            initiated_by=user_id,
            started_at=utcnow(),
            request_params=sanitize_params(params),
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        logger.debug("Sync started", sync_id=record.id, sync_type=record.sync_type, tenant_id=tenant_id)
        return record.id

    async def log_complete(self, record_id: str, results: SyncResults | None = None) -> SyncLog:
        """Close a record with its item counters; status follows the counters."""
        results = results or SyncResults()
        record = await self._get_open(record_id)
        completed_at = utcnow()
        status = derive_status(results)

        record.status = status.value
        record.completed_at = completed_at
        record.duration_ms = _duration_ms(record.started_at, completed_at)
        record.items_created = results.created
        record.items_updated = results.updated
        record.items_skipped = results.skipped
        record.items_failed = results.failed
        record.response_summary = results.summary
        record.item_errors = sanitize_item_errors(results.item_errors)

        await self.db.commit()
        await self.db.refresh(record)

        logger.info(
            "Sync finished",
            sync_id=record.id,
            sync_type=record.sync_type,
            status=status.value,
            created=results.created,
            updated=results.updated,
            failed=results.failed,
        )
        return record

    async def log_failure(
        self,
        record_id: str,
        error: Any,
        item_errors: list[dict[str, Any]] | None = None,
    ) -> SyncLog:
        """Close a record as failed with a sanitized error."""
        record = await self._get_open(record_id)
        completed_at = utcnow()

        record.status = SyncStatus.FAILED.value
        record.completed_at = completed_at
        record.duration_ms = _duration_ms(record.started_at, completed_at)
        record.error_message = sanitize_error(error)
        record.item_errors = sanitize_item_errors(item_errors)

        await self.db.commit()
        await self.db.refresh(record)

        logger.warning(
            "Sync failed",
            sync_id=record.id,
            sync_type=record.sync_type,
            error=record.error_message,
        )
        return record

    async def get_last_successful_sync(self, tenant_id: str, sync_type: SyncType | str) -> SyncLog | None:
        """Most recently completed sync that finished completed or partial."""
        result = await self.db.execute(
            select(SyncLog)
            .where(SyncLog.tenant_id == tenant_id)
            .where(SyncLog.sync_type == SyncType(sync_type).value)
            .where(SyncLog.status.in_([SyncStatus.COMPLETED.value, SyncStatus.PARTIAL.value]))
            .order_by(SyncLog.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_sync_history(
        self,
        tenant_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
        sync_type: SyncType | str | None = None,
        status: SyncStatus | str | None = None,
    ) -> tuple[list[SyncLog], int]:
        """Page of a tenant's sync records, newest first, with the total count."""
        conditions = [SyncLog.tenant_id == tenant_id]
        if sync_type is not None:
            conditions.append(SyncLog.sync_type == SyncType(sync_type).value)
        if status is not None:
            conditions.append(SyncLog.status == SyncStatus(status).value)

        total = await self.db.scalar(select(func.count()).select_from(SyncLog).where(*conditions))
        result = await self.db.execute(
            select(SyncLog)
            .where(*conditions)
            .order_by(SyncLog.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0
