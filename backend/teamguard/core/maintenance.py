"""Periodic maintenance jobs.

- revocation purge: drops ledger entries whose tokens can no longer be replayed
- grant purge: drops permission grants past their expiry
- credential refresh sweep

Each job is idempotent and safe to run alongside request traffic. The
scheduler runs them as asyncio tasks inside the API process; the CLI
runs them once.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamguard.config import Settings, get_settings
from teamguard.core.logging import get_logger, log_operation
from teamguard.core.permissions import GrantManager
from teamguard.core.refresh_sweep import CredentialRefreshSweep, SweepReport
from teamguard.core.revocation import RevocationLedger
from teamguard.database import get_session_maker

logger = get_logger(__name__)


@log_operation("revocation purge")
async def purge_revocations(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    now: datetime | None = None,
) -> int:
    async with (session_maker or get_session_maker())() as db:
        return await RevocationLedger(db).purge_expired(now)


@log_operation("grant purge")
async def purge_grants(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    now: datetime | None = None,
) -> int:
    async with (session_maker or get_session_maker())() as db:
        return await GrantManager(db).purge_expired_grants(now)


@log_operation("credential refresh sweep")
async def refresh_credentials(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    sweep: CredentialRefreshSweep | None = None,
) -> SweepReport:
    sweep = sweep or CredentialRefreshSweep(session_maker)
    return await sweep.run()


class MaintenanceScheduler:
    """Runs the maintenance jobs on fixed intervals."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        sweep: CredentialRefreshSweep | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_maker = session_maker
        self.sweep = sweep or CredentialRefreshSweep(session_maker)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return

        purge_interval = self.settings.revocation_purge_interval_hours * 3600
        refresh_interval = self.settings.credential_refresh_interval_seconds

        self._tasks = [
            asyncio.create_task(
                self._every(purge_interval, "revocation purge", self._purge),
                name="teamguard-revocation-purge",
            ),
            asyncio.create_task(
                self._every(refresh_interval, "credential refresh", self._refresh),
                name="teamguard-credential-refresh",
            ),
        ]
        logger.info(
            "Maintenance scheduler started",
            purge_interval_seconds=purge_interval,
            refresh_interval_seconds=refresh_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    async def _purge(self) -> None:
        await purge_revocations(self.session_maker)
        await purge_grants(self.session_maker)

    async def _refresh(self) -> None:
        await refresh_credentials(self.session_maker, self.sweep)

    async def _every(self, interval: float, name: str, job: Callable[[], Awaitable[None]]) -> None:
        while True:
            try:
                await job()
            except Exception:
                # Keep the loop alive; the next run retries
                logger.error("Maintenance job failed", job=name, exc_info=True)
            await asyncio.sleep(interval)
