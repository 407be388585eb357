"""Tests for persisted run history, progress and stored configuration."""

import json

import pytest

from app.config import Settings, SyncConfig
from app.database import get_database, set_setting
from app.sync.configuration import (
    SYNC_CONFIGURATION_KEY,
    InvalidConfigurationError,
    check_calendar_access,
    clear_sync_config,
    load_stored_config,
    load_sync_config,
    save_sync_config,
)
from app.sync.engine import RunState, SyncRunSummary
from app.sync.errors import CalendarAccessError
from app.sync.history import (
    DatabaseProgressReporter,
    clear_run_status,
    get_last_sync_status,
    get_sync_history,
    get_sync_progress,
    prune_sync_runs,
    record_sync_run,
)


def _summary(status="success", **kwargs):
    values = {
        "success": status == "success",
        "status": status,
        "timestamp": "2024-04-10T12:00:00+00:00",
        "started_at": "2024-04-10T11:59:00+00:00",
        "sources_total": 2,
        "sources_synced": 2,
        "forward": {"work": {"created": 1}},
        "reverse": {"updated": 0},
    }
    values.update(kwargs)
    return SyncRunSummary(**values)


@pytest.mark.asyncio
async def test_record_and_read_history(test_db):
    await record_sync_run(_summary())
    await record_sync_run(_summary("partial", errors=["boom"], recoverable_errors=1))

    runs = await get_sync_history(limit=10)

    assert [run["status"] for run in runs] == ["partial", "success"]
    assert runs[0]["success"] is False
    assert runs[0]["errors"] == ["boom"]
    assert runs[1]["success"] is True
    assert runs[1]["forward"] == {"work": {"created": 1}}


@pytest.mark.asyncio
async def test_history_limit(test_db):
    for _ in range(5):
        await record_sync_run(_summary())

    assert len(await get_sync_history(limit=3)) == 3


@pytest.mark.asyncio
async def test_prune_keeps_newest_runs(test_db):
    for status in ["failed", "partial", "success"]:
        await record_sync_run(_summary(status))

    deleted = await prune_sync_runs(keep=2)

    assert deleted == 1
    assert [run["status"] for run in await get_sync_history()] == ["success", "partial"]


@pytest.mark.asyncio
async def test_prune_drops_old_runs(test_db):
    await record_sync_run(_summary(timestamp="2000-01-01T00:00:00+00:00"))
    await record_sync_run(_summary(timestamp="2999-01-01T00:00:00+00:00"))

    deleted = await prune_sync_runs(older_than_days=30)

    assert deleted == 1
    assert len(await get_sync_history()) == 1


@pytest.mark.asyncio
async def test_progress_reporter_tracks_run(test_db):
    reporter = DatabaseProgressReporter(history_size=1)

    await reporter.report(RunState.FORWARD_PASS, "Syncing source 1/2", current_source="work")
    progress = await get_sync_progress()
    assert progress["state"] == "forward-pass"
    assert progress["current_source"] == "work"

    await reporter.complete(_summary())
    await reporter.complete(_summary("partial"))

    progress = await get_sync_progress()
    assert progress["state"] == "completed"
    assert progress["status"] == "partial"
    assert (await get_last_sync_status())["status"] == "partial"
    assert len(await get_sync_history()) == 1


@pytest.mark.asyncio
async def test_clear_run_status(test_db):
    await DatabaseProgressReporter().complete(_summary())

    await clear_run_status()

    assert await get_sync_progress() is None
    assert await get_last_sync_status() is None
    # History is kept
    assert len(await get_sync_history()) == 1


@pytest.mark.asyncio
async def test_malformed_status_is_ignored(test_db):
    await set_setting("last_sync_status", "{not json")

    assert await get_last_sync_status() is None


@pytest.mark.asyncio
async def test_stored_config_overrides_environment(test_db):
    settings = Settings(source_calendar_ids="env@example.com", target_calendar_id="t@example.com")
    assert (await load_sync_config(settings)).source_calendar_ids == ["env@example.com"]

    await save_sync_config(
        SyncConfig(source_calendar_ids=["stored@example.com"], target_calendar_id="t@example.com")
    )
    config = await load_sync_config(settings)

    assert config.source_calendar_ids == ["stored@example.com"]
    assert (await load_stored_config())["target_calendar_id"] == "t@example.com"

    await clear_sync_config()
    assert (await load_sync_config(settings)).source_calendar_ids == ["env@example.com"]


@pytest.mark.asyncio
async def test_invalid_config_is_not_saved(test_db):
    with pytest.raises(InvalidConfigurationError) as exc_info:
        await save_sync_config(SyncConfig(source_calendar_ids=["a"], target_calendar_id="a"))

    assert exc_info.value.errors == ["Target calendar cannot also be a source: a"]
    assert await load_stored_config() is None


@pytest.mark.asyncio
async def test_malformed_stored_config_falls_back(test_db):
    await set_setting(SYNC_CONFIGURATION_KEY, json.dumps({"days_back": 3})[:-3])

    assert await load_stored_config() is None


@pytest.mark.asyncio
async def test_sync_runs_table_stores_counts(test_db):
    await record_sync_run(_summary(critical_errors=2, sources_synced=1))

    db = await get_database()
    cursor = await db.execute("SELECT critical_errors, sources_synced, finished_at FROM sync_runs")
    row = await cursor.fetchone()

    assert row["critical_errors"] == 2
    assert row["sources_synced"] == 1
    assert row["finished_at"] == "2024-04-10T12:00:00+00:00"


def test_check_calendar_access(fake_calendar):
    fake_calendar.add_calendar("t@example.com")
    fake_calendar.add_calendar("a@example.com")
    fake_calendar.fail("get_calendar", "b@example.com", CalendarAccessError("forbidden", "b@example.com"))
    config = SyncConfig(
        source_calendar_ids=["a@example.com", "b@example.com", "c@example.com"],
        target_calendar_id="t@example.com",
    )

    results = check_calendar_access(fake_calendar, config)

    assert [(r["calendar_id"], r["role"], r["accessible"]) for r in results] == [
        ("t@example.com", "target", True),
        ("a@example.com", "source", True),
        ("b@example.com", "source", False),
        ("c@example.com", "source", False),
    ]
    assert results[2]["error"] == "forbidden"
    assert results[3]["error"] == "Calendar not found"
