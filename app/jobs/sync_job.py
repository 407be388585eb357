"""Periodic sync job and the database-backed run lock."""

import asyncio
import logging
import time
from datetime import datetime, timedelta

from app.database import get_database, get_setting

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.5  # seconds


async def is_sync_paused() -> bool:
    """Check if sync is globally paused."""
    setting = await get_setting("sync_paused")
    return bool(setting and setting.get("value") == "true")


async def run_periodic_sync(service) -> None:
    """Run one scheduled sync pass."""
    if await is_sync_paused():
        logger.debug("Sync is paused, skipping periodic sync")
        return

    if service.is_running:
        logger.debug("A sync run is already in progress, skipping periodic sync")
        return

    summary = await service.run_once()
    if summary.skipped:
        logger.info("Periodic sync skipped, another run holds the lock")
    else:
        logger.info(
            f"Periodic sync finished: {summary.status} "
            f"({summary.critical_errors} critical, {summary.recoverable_errors} recoverable errors)"
        )


async def acquire_job_lock(job_name: str, timeout_minutes: int = 15) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    # First, try to clean up stale locks
    await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    await db.commit()

    # Now try to acquire the lock
    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), "worker")
        )
        await db.commit()
        return True
    except Exception:
        # Lock already held by another run
        return False


async def refresh_job_lock(job_name: str) -> bool:
    """
    Move a held lock's ``locked_at`` to now so stale cleanup skips it.

    Returns False if the row is gone (the lock was reaped).
    """
    db = await get_database()
    cursor = await db.execute(
        "UPDATE job_locks SET locked_at = ? WHERE job_name = ?",
        (datetime.utcnow().isoformat(), job_name)
    )
    await db.commit()
    return cursor.rowcount > 0


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()


class DatabaseJobLock:
    """Run lock over the ``job_locks`` table with a bounded wait."""

    def __init__(
        self,
        job_name: str,
        stale_minutes: int = 15,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ):
        self.job_name = job_name
        self.stale_minutes = stale_minutes
        self.poll_interval = poll_interval
        self.held = False

    async def try_acquire(self, timeout_ms: int = 0) -> bool:
        """Try to take the lock, polling until ``timeout_ms`` has elapsed."""
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            if await acquire_job_lock(self.job_name, self.stale_minutes):
                self.held = True
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def refresh(self) -> None:
        """Heartbeat while held; called by the orchestrator between run phases."""
        if self.held and not await refresh_job_lock(self.job_name):
            logger.warning(f"Job lock {self.job_name} disappeared while held")

    async def release(self) -> None:
        if self.held:
            await release_job_lock(self.job_name)
            self.held = False
