"""Tests for the periodic sync job, run lock and retention cleanup."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.database import get_database, set_setting
from app.sync.engine import SyncRunSummary


class _FakeService:
    def __init__(self, running: bool = False, status: str = "success"):
        self.is_running = running
        self.runs = 0
        self.status = status

    async def run_once(self):
        self.runs += 1
        return SyncRunSummary(success=self.status == "success", status=self.status)


@pytest.mark.asyncio
async def test_run_periodic_sync_honors_pause(test_db):
    """Periodic sync should do nothing while sync is paused."""
    from app.jobs.sync_job import is_sync_paused, run_periodic_sync

    service = _FakeService()
    await set_setting("sync_paused", "true")
    assert await is_sync_paused() is True

    await run_periodic_sync(service)
    assert service.runs == 0

    await set_setting("sync_paused", "false")
    await run_periodic_sync(service)
    assert service.runs == 1


@pytest.mark.asyncio
async def test_run_periodic_sync_skips_when_run_in_progress(test_db, mocker):
    """A manual run in progress should not be doubled by the scheduler."""
    from app.jobs.sync_job import run_periodic_sync

    service = mocker.Mock(is_running=True)
    service.run_once = mocker.AsyncMock()

    await run_periodic_sync(service)
    service.run_once.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_periodic_sync_handles_skipped_run(test_db):
    """A run that lost the lock race is logged, not raised."""
    from app.jobs.sync_job import run_periodic_sync

    service = _FakeService(status="skipped")
    await run_periodic_sync(service)
    assert service.runs == 1


@pytest.mark.asyncio
async def test_acquire_and_release_job_lock(test_db):
    """Lock helpers should acquire once, reject duplicate, clear stale, and release."""
    from app.jobs.sync_job import acquire_job_lock, release_job_lock

    db = await get_database()

    assert await acquire_job_lock("job-a") is True
    assert await acquire_job_lock("job-a") is False

    stale = (datetime.utcnow() - timedelta(minutes=30)).isoformat()
    await db.execute(
        "UPDATE job_locks SET locked_at = ? WHERE job_name = ?",
        (stale, "job-a"),
    )
    await db.commit()
    assert await acquire_job_lock("job-a", timeout_minutes=15) is True

    await release_job_lock("job-a")
    cursor = await db.execute("SELECT COUNT(*) FROM job_locks WHERE job_name = ?", ("job-a",))
    assert (await cursor.fetchone())[0] == 0


@pytest.mark.asyncio
async def test_database_job_lock_is_exclusive(test_db):
    """Only one holder at a time; releasing a lock not held is a no-op."""
    from app.jobs.sync_job import DatabaseJobLock

    first = DatabaseJobLock("calendar_sync")
    second = DatabaseJobLock("calendar_sync")

    assert await first.try_acquire(0) is True
    assert await second.try_acquire(0) is False

    await second.release()
    assert await second.try_acquire(0) is False

    await first.release()
    assert await second.try_acquire(0) is True
    await second.release()


@pytest.mark.asyncio
async def test_database_job_lock_waits_for_release(test_db):
    """A waiting acquirer gets the lock once the holder releases it."""
    from app.jobs.sync_job import DatabaseJobLock

    holder = DatabaseJobLock("calendar_sync")
    waiter = DatabaseJobLock("calendar_sync", poll_interval=0.01)
    assert await holder.try_acquire(0) is True

    async def release_soon():
        await asyncio.sleep(0.05)
        await holder.release()

    release_task = asyncio.create_task(release_soon())
    assert await waiter.try_acquire(2000) is True
    await release_task
    await waiter.release()


@pytest.mark.asyncio
async def test_refreshed_lock_is_not_reaped_as_stale(test_db):
    """A long run that keeps refreshing its lock must not be overlapped."""
    from app.jobs.sync_job import DatabaseJobLock, refresh_job_lock

    holder = DatabaseJobLock("calendar_sync", stale_minutes=15)
    assert await holder.try_acquire(0) is True

    db = await get_database()
    old = (datetime.utcnow() - timedelta(minutes=20)).isoformat()
    await db.execute(
        "UPDATE job_locks SET locked_at = ? WHERE job_name = ?",
        (old, "calendar_sync")
    )
    await db.commit()

    await holder.refresh()

    other = DatabaseJobLock("calendar_sync", stale_minutes=15)
    assert await other.try_acquire(0) is False

    await holder.release()
    assert await refresh_job_lock("calendar_sync") is False


@pytest.mark.asyncio
async def test_retention_cleanup_removes_old_rows(test_db, monkeypatch):
    """Cleanup should prune run history and stale locks."""
    import app.jobs.cleanup as cleanup
    from app.sync.history import get_sync_history, record_sync_run

    monkeypatch.setattr(
        cleanup,
        "get_settings",
        lambda: SimpleNamespace(run_history_size=2, run_history_retention_days=30, lock_stale_minutes=15),
    )

    await record_sync_run(SyncRunSummary(status="failed", timestamp="2000-01-01T00:00:00+00:00"))
    for _ in range(3):
        await record_sync_run(SyncRunSummary(status="success", timestamp=datetime.utcnow().isoformat()))

    db = await get_database()
    stale = (datetime.utcnow() - timedelta(hours=1)).isoformat()
    await db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("calendar_sync", stale, "worker"),
    )
    await db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("fresh", datetime.utcnow().isoformat(), "worker"),
    )
    await db.commit()

    summary = await cleanup.run_retention_cleanup()

    assert summary == {"old_sync_runs": 2, "stale_job_locks": 1}
    assert len(await get_sync_history()) == 2
    cursor = await db.execute("SELECT job_name FROM job_locks")
    assert [row["job_name"] for row in await cursor.fetchall()] == ["fresh"]
