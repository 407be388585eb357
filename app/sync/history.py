"""Persisted run progress and run history."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from app.database import delete_setting, get_database, get_setting, set_setting

logger = logging.getLogger(__name__)

SYNC_PROGRESS_KEY = "sync_progress"
LAST_SYNC_STATUS_KEY = "last_sync_status"


async def _get_json_setting(key: str) -> Optional[dict]:
    setting = await get_setting(key)
    if not setting or not setting.get("value"):
        return None
    try:
        return json.loads(setting["value"])
    except ValueError:
        logger.warning(f"Ignoring malformed JSON stored under setting {key}")
        return None


async def get_sync_progress() -> Optional[dict]:
    """Latest progress snapshot of the current or last run."""
    return await _get_json_setting(SYNC_PROGRESS_KEY)


async def get_last_sync_status() -> Optional[dict]:
    """Summary of the last finished run."""
    return await _get_json_setting(LAST_SYNC_STATUS_KEY)


async def clear_run_status() -> None:
    """Forget the stored progress and last run summary."""
    await delete_setting(SYNC_PROGRESS_KEY)
    await delete_setting(LAST_SYNC_STATUS_KEY)


async def record_sync_run(summary) -> int:
    """Store a finished run; returns its row id."""
    data = summary.to_dict()
    details = {
        "forward": data["forward"],
        "reverse": data["reverse"],
        "errors": data["errors"],
    }

    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO sync_runs
           (status, success, critical_errors, recoverable_errors,
            sources_total, sources_synced, details, started_at, finished_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            data["status"],
            data["success"],
            data["critical_errors"],
            data["recoverable_errors"],
            data["sources_total"],
            data["sources_synced"],
            json.dumps(details),
            data["started_at"],
            data["timestamp"],
        )
    )
    await db.commit()
    return cursor.lastrowid


def _row_to_run(row) -> dict[str, Any]:
    run = dict(row)
    run["success"] = bool(run["success"])
    run.update(json.loads(run.pop("details") or "{}"))
    return run


async def get_sync_history(limit: int = 10) -> list[dict]:
    """Most recent runs, newest first."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
        (limit,)
    )
    rows = await cursor.fetchall()
    return [_row_to_run(row) for row in rows]


async def prune_sync_runs(
    keep: Optional[int] = None,
    older_than_days: Optional[int] = None,
) -> int:
    """Delete runs beyond the newest ``keep`` and runs older than the cutoff."""
    db = await get_database()
    deleted = 0

    if keep is not None:
        cursor = await db.execute(
            """DELETE FROM sync_runs WHERE id NOT IN
               (SELECT id FROM sync_runs ORDER BY id DESC LIMIT ?)""",
            (keep,)
        )
        deleted += cursor.rowcount

    if older_than_days is not None:
        cutoff = (datetime.utcnow() - timedelta(days=older_than_days)).isoformat()
        cursor = await db.execute(
            "DELETE FROM sync_runs WHERE finished_at < ?",
            (cutoff,)
        )
        deleted += cursor.rowcount

    await db.commit()
    return deleted


class DatabaseProgressReporter:
    """Stores orchestrator progress and the final summary in the database."""

    def __init__(self, history_size: Optional[int] = None):
        self.history_size = history_size

    async def report(self, state, message: str, **details: Any) -> None:
        progress = {
            "state": getattr(state, "value", state),
            "message": message,
            "updated_at": datetime.utcnow().isoformat(),
            **details,
        }
        await set_setting(SYNC_PROGRESS_KEY, json.dumps(progress))

    async def complete(self, summary) -> None:
        data = summary.to_dict()
        await set_setting(
            SYNC_PROGRESS_KEY,
            json.dumps({
                "state": "completed",
                "message": f"Sync {data['status']}",
                "updated_at": datetime.utcnow().isoformat(),
                "status": data["status"],
            })
        )
        await set_setting(LAST_SYNC_STATUS_KEY, json.dumps(data))
        await record_sync_run(summary)

        if self.history_size:
            await prune_sync_runs(keep=self.history_size)
