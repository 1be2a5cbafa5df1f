"""Team integration status and sync history API.

Secrets never leave the server: responses carry state and sanitized
errors only.
"""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.api.guards import require_permission
from teamguard.core.integration_credentials import IntegrationCredentialManager
from teamguard.core.principal import Principal
from teamguard.core.sanitizer import sanitize_params
from teamguard.core.sync_journal import DEFAULT_HISTORY_LIMIT, SyncJournal
from teamguard.database import get_db
from teamguard.models import Capability, Provider, SyncLog, SyncStatus, SyncType

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

require_team_settings = require_permission(Capability.TEAM_SETTINGS)


class IntegrationResponse(BaseModel):
    """Connection state of one provider."""
    provider: str
    credential_type: str
    is_active: bool
    token_expires_at: datetime | None
    last_refreshed_at: datetime | None
    has_errors: bool
    refresh_error_count: int
    last_refresh_error: str | None
    config: dict[str, Any]


class IntegrationStateResponse(BaseModel):
    provider: str
    is_active: bool
    state: str


class SyncLogResponse(BaseModel):
    """A sync journal record."""
    id: str
    sync_type: str
    source_system: str
    status: str
    api_endpoint: str | None
    initiated_by: str | None
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    items_created: int
    items_updated: int
    items_skipped: int
    items_failed: int
    error_message: str | None

    @classmethod
    def from_record(cls, record: SyncLog) -> "SyncLogResponse":
        return cls(
            id=record.id,
            sync_type=record.sync_type,
            source_system=record.source_system,
            status=record.status,
            api_endpoint=record.api_endpoint,
            initiated_by=record.initiated_by,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_ms=record.duration_ms,
            items_created=record.items_created,
            items_updated=record.items_updated,
            items_skipped=record.items_skipped,
            items_failed=record.items_failed,
            error_message=record.error_message,
        )


class SyncHistoryResponse(BaseModel):
    total: int
    limit: int
    offset: int
    records: list[SyncLogResponse]


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    principal: Annotated[Principal, Depends(require_team_settings)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """All provider connections of the caller's team."""
    summaries = await IntegrationCredentialManager(db).list_team_integrations(principal.tenant_id)
    return [
        IntegrationResponse(
            provider=s.provider,
            credential_type=s.credential_type,
            is_active=s.is_active,
            token_expires_at=s.token_expires_at,
            last_refreshed_at=s.last_refreshed_at,
            has_errors=s.has_errors,
            refresh_error_count=s.refresh_error_count,
            last_refresh_error=s.last_refresh_error,
            config=sanitize_params(s.config) or {},
        )
        for s in summaries
    ]


@router.post("/{provider}/deactivate", response_model=IntegrationStateResponse)
async def deactivate_integration(
    provider: Provider,
    principal: Annotated[Principal, Depends(require_team_settings)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Switch a provider connection off without deleting it."""
    found = await IntegrationCredentialManager(db).deactivate(principal.tenant_id, provider)
    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return IntegrationStateResponse(provider=provider.value, is_active=False, state="deactivated")


@router.post("/{provider}/reactivate", response_model=IntegrationStateResponse)
async def reactivate_integration(
    provider: Provider,
    principal: Annotated[Principal, Depends(require_team_settings)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Turn a deactivated connection back on and clear its failure count."""
    manager = IntegrationCredentialManager(db)
    credential = await manager.reactivate(principal.tenant_id, provider)
    return IntegrationStateResponse(
        provider=credential.provider,
        is_active=credential.is_active,
        state=manager.state(credential).value,
    )


@router.get("/sync-history", response_model=SyncHistoryResponse)
async def get_sync_history(
    principal: Annotated[Principal, Depends(require_team_settings)],
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: Annotated[int, Query(ge=1, le=200)] = DEFAULT_HISTORY_LIMIT,
    offset: Annotated[int, Query(ge=0)] = 0,
    sync_type: SyncType | None = None,
    sync_status: Annotated[SyncStatus | None, Query(alias="status")] = None,
):
    """Sync records of the caller's team, newest first."""
    records, total = await SyncJournal(db).get_sync_history(
        principal.tenant_id,
        limit=limit,
        offset=offset,
        sync_type=sync_type,
        status=sync_status,
    )
    return SyncHistoryResponse(
        total=total,
        limit=limit,
        offset=offset,
        records=[SyncLogResponse.from_record(r) for r in records],
    )


@router.get("/sync-history/last-success", response_model=SyncLogResponse | None)
async def get_last_successful_sync(
    sync_type: SyncType,
    principal: Annotated[Principal, Depends(require_team_settings)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Latest completed or partial sync of a type, or null."""
    record = await SyncJournal(db).get_last_successful_sync(principal.tenant_id, sync_type)
    return SyncLogResponse.from_record(record) if record else None
