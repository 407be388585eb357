"""Retention cleanup job."""

import logging
from datetime import datetime, timedelta

from app.config import get_settings
from app.database import get_database
from app.sync.history import prune_sync_runs

logger = logging.getLogger(__name__)


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Sync run history: newest ``run_history_size`` runs, none older than
      ``run_history_retention_days``
    - Job locks: removed once older than ``lock_stale_minutes``
    """
    settings = get_settings()
    db = await get_database()
    now = datetime.utcnow()

    summary = {
        "old_sync_runs": 0,
        "stale_job_locks": 0,
    }

    summary["old_sync_runs"] = await prune_sync_runs(
        keep=settings.run_history_size,
        older_than_days=settings.run_history_retention_days,
    )

    lock_cutoff = (now - timedelta(minutes=settings.lock_stale_minutes)).isoformat()
    cursor = await db.execute(
        "DELETE FROM job_locks WHERE locked_at < ? RETURNING job_name",
        (lock_cutoff,)
    )
    deleted = await cursor.fetchall()
    summary["stale_job_locks"] = len(deleted)
    await db.commit()

    logger.info(f"Retention cleanup completed: {summary}")
    return summary
