"""Background refresh of integration credentials nearing expiry."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamguard.core.errors import CredentialError, CredentialDeactivatedError, RefreshFailureError
from teamguard.core.integration_credentials import (
    IntegrationCredentialManager,
    KeyedLocks,
    TokenRefresher,
    refresh_locks,
)
from teamguard.core.logging import get_logger
from teamguard.core.oauth_refresher import OAuth2TokenRefresher
from teamguard.database import get_session_maker, utcnow

logger = get_logger(__name__)


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    FRESH = "fresh"          # another worker refreshed it first
    SKIPPED = "skipped"      # a refresh for the same key is in flight
    FAILED = "failed"
    DEACTIVATED = "deactivated"


@dataclass
class SweepReport:
    candidates: int = 0
    refreshed: int = 0
    fresh: int = 0
    skipped: int = 0
    failed: int = 0
    deactivated: int = 0

    def record(self, outcome: RefreshOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


class CredentialRefreshSweep:
    """Refreshes every credential inside its refresh window.

    Different (tenant, provider) pairs refresh in parallel, each with its
    own session. A pair whose refresh is already running is skipped.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        refresher_for: Callable[[str], TokenRefresher] | None = None,
        locks: KeyedLocks | None = None,
        max_concurrency: int = 10,
    ):
        self.session_maker = session_maker
        self.refresher_for = refresher_for or (lambda provider: OAuth2TokenRefresher())
        self.locks = locks or refresh_locks
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_maker or get_session_maker()

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        async with self._sessions()() as db:
            manager = IntegrationCredentialManager(db, locks=self.locks)
            report.deactivated += await manager.deactivate_expired_refresh_tokens(now)
            candidates = [
                (c.tenant_id, c.provider)
                for c in await manager.find_credentials_needing_refresh(now)
            ]

        report.candidates = len(candidates)
        outcomes = await asyncio.gather(*(self._refresh_one(t, p) for t, p in candidates))
        for outcome in outcomes:
            report.record(outcome)

        logger.info(
            "Credential refresh sweep finished",
            candidates=report.candidates,
            refreshed=report.refreshed,
            failed=report.failed,
            deactivated=report.deactivated,
            skipped=report.skipped,
        )
        return report

    async def _refresh_one(self, tenant_id: str, provider: str) -> RefreshOutcome:
        if self.locks.locked((tenant_id, provider)):
            logger.debug("Refresh already in progress", tenant_id=tenant_id, provider=provider)
            return RefreshOutcome.SKIPPED

        async with self._semaphore:
            async with self._sessions()() as db:
                manager = IntegrationCredentialManager(db, locks=self.locks)
                try:
                    result = await manager.refresh_token_if_needed(
                        tenant_id, provider, self.refresher_for(provider)
                    )
                except CredentialDeactivatedError:
                    return RefreshOutcome.DEACTIVATED
                except RefreshFailureError as e:
                    # Already sanitized and counted by the manager
                    return RefreshOutcome.DEACTIVATED if e.deactivated else RefreshOutcome.FAILED
                except CredentialError:
                    return RefreshOutcome.FAILED
                except Exception:
                    logger.error(
                        "Unexpected error refreshing credentials",
                        tenant_id=tenant_id,
                        provider=provider,
                        exc_info=True,
                    )
                    return RefreshOutcome.FAILED

        return RefreshOutcome.REFRESHED if result.refreshed else RefreshOutcome.FRESH
