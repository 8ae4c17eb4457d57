from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from realmauth.logging import get_logger
from realmauth.service.lockout import lift_ban
from realmauth.storage.common import CredentialStore
from realmauth.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 600
MAX_BACKOFF_SECONDS = 3600


class MaintenanceJobs:
    """Periodic cleanup over the credential store.

    Both jobs are idempotent. Every write is conditional on the version read in
    the same pass; records that changed in the meantime are skipped and picked
    up on the next run.
    """

    def __init__(
        self, store: CredentialStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def purge_expired_verifications(self) -> dict:
        now = self._clock()
        stripped = deleted = skipped = 0
        for account in self.store.list_expired_verifications(now):
            if account.wallet_address:
                cleaned = replace(
                    account,
                    email=None,
                    verification=None,
                    email_change=None,
                    password_reset=None,
                )
                if self.store.update_account(cleaned, account.version) is None:
                    skipped += 1
                    continue
                stripped += 1
            else:
                if not self.store.delete_account(account.id, account.version):
                    skipped += 1
                    continue
                deleted += 1
        logger.info(
            "maintenance_purged_verifications",
            stripped=stripped,
            deleted=deleted,
            skipped=skipped,
        )
        return {"stripped": stripped, "deleted": deleted, "skipped": skipped}

    def lift_expired_bans(self) -> dict:
        now = self._clock()
        lifted = skipped = 0
        for account in self.store.list_expired_bans(now):
            cleared = replace(account, lockout=lift_ban(account.lockout))
            if self.store.update_account(cleared, account.version) is None:
                skipped += 1
                continue
            lifted += 1
        logger.info("maintenance_lifted_bans", lifted=lifted, skipped=skipped)
        return {"lifted": lifted, "skipped": skipped}

    def run_all(self) -> dict:
        return {
            "purge_expired_verifications": self.purge_expired_verifications(),
            "lift_expired_bans": self.lift_expired_bans(),
        }


class MaintenanceWorker:
    """Background task running the maintenance jobs on a fixed interval."""

    def __init__(
        self,
        jobs: MaintenanceJobs,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.jobs = jobs
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def run_once(self) -> dict:
        return await asyncio.to_thread(self.jobs.run_all)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "maintenance_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)


__all__ = ["MaintenanceJobs", "MaintenanceWorker"]
