"""Tests for the source -> target forward pass."""

import pytest

from app.sync.errors import EventSyncError
from app.sync.forward import ForwardSyncEngine, error_threshold
from app.sync.metadata import build_mirror_payload, read_metadata
from app.sync.state import SyncStateManager
from tests.fake_calendar import make_event

TARGET = "target@example.com"
WORK = "work@example.com"


@pytest.fixture
def state(clock):
    return SyncStateManager(clock=clock)


@pytest.fixture
def engine(fake_calendar, state):
    fake_calendar.add_calendar(TARGET)
    return ForwardSyncEngine(fake_calendar, state, TARGET)


def _seed_mirror(fake_calendar, target_id, source_event, source_calendar_id=WORK, **overrides):
    mirror = build_mirror_payload(source_event, source_calendar_id)
    mirror.update({"id": target_id, "status": "confirmed", "updated": "2024-04-05T00:00:00Z"})
    mirror.update(overrides)
    return fake_calendar.add_event(TARGET, mirror)


def test_error_threshold():
    assert error_threshold(0) == 5
    assert error_threshold(49) == 5
    assert error_threshold(100) == 10
    assert error_threshold(1000) == 100


def test_creates_mirror_for_unmatched_event(engine, fake_calendar, state):
    source = make_event("s1", summary="Standup")

    result = engine.sync_events(WORK, [source], [])

    inserts = fake_calendar.calls_for("insert", TARGET)
    assert len(inserts) == 1
    mirror = fake_calendar.events(TARGET)[0]
    metadata = read_metadata(mirror)
    assert mirror["summary"] == "Standup"
    assert metadata.sync_source == WORK
    assert metadata.sync_original_id == "s1"
    assert result.created == 1
    assert state.operations[-1].operation == "create"


def test_one_mirror_per_source_event(engine, fake_calendar):
    sources = [make_event(f"s{i}", summary=f"Event {i}") for i in range(3)]

    result = engine.sync_events(WORK, sources, [])

    assert len(fake_calendar.calls_for("insert")) == 3
    assert result.created == 3
    assert result.processed == 3


def test_no_write_when_source_older(engine, fake_calendar):
    source = make_event("s1", updated="2024-04-01T00:00:00Z")
    _seed_mirror(fake_calendar, "t1", source)

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == []
    assert result.unchanged == 1


def test_updates_mirror_when_source_newer(engine, fake_calendar, state):
    source = make_event("s1", summary="Renamed", updated="2024-04-09T00:00:00Z")
    _seed_mirror(fake_calendar, "t1", make_event("s1", summary="Old"))

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == [("update", TARGET, "t1")]
    assert fake_calendar.events(TARGET)[0]["summary"] == "Renamed"
    assert result.updated == 1
    operation = state.operations[-1]
    assert operation.operation == "update"
    assert set(operation.metadata) == {"source_updated", "target_updated"}


def test_cancelled_source_deletes_live_mirror_once(engine, fake_calendar):
    source = make_event("s1", status="cancelled", updated="2024-04-09T00:00:00Z")
    _seed_mirror(fake_calendar, "t1", make_event("s1"))

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == [("delete", TARGET, "t1")]
    assert fake_calendar.calls_for("update") == []
    assert result.deleted == 1


def test_cancelled_source_with_cancelled_mirror_is_noop(engine, fake_calendar):
    source = make_event("s1", status="cancelled")
    _seed_mirror(fake_calendar, "t1", make_event("s1"), status="cancelled")

    engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == []


def test_cancelled_source_without_mirror_is_not_created(engine, fake_calendar):
    engine.sync_events(WORK, [make_event("s1", status="cancelled")], [])

    assert fake_calendar.writes() == []


def test_adopts_untagged_lookalike_instead_of_duplicating(engine, fake_calendar, state):
    source = make_event("s1", summary="Dentist")
    fake_calendar.add_event(TARGET, make_event("manual", summary="Dentist"))

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == [("update", TARGET, "manual")]
    assert read_metadata(fake_calendar.events(TARGET)[0]).sync_original_id == "s1"
    assert result.adopted == 1
    assert state.operations[-1].metadata == {"adopted": "manual"}


def test_adopted_event_not_matched_twice(engine, fake_calendar):
    sources = [make_event("s1", summary="Dentist"), make_event("s2", summary="Dentist")]
    fake_calendar.add_event(TARGET, make_event("manual", summary="Dentist"))

    result = engine.sync_events(WORK, sources, fake_calendar.list_events(TARGET, None, None))

    assert result.adopted == 1
    assert result.created == 1
    assert len(fake_calendar.events(TARGET)) == 2


def test_keyed_match_wins_over_lookalike(engine, fake_calendar):
    source = make_event("s1", summary="Review", updated="2024-04-09T00:00:00Z")
    _seed_mirror(fake_calendar, "keyed", make_event("s1", summary="Old"))
    fake_calendar.add_event(TARGET, make_event("lookalike", summary="Review"))

    engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == [("update", TARGET, "keyed")]


def test_loop_guard_blocks_echo_of_reverse_write(engine, fake_calendar, state):
    source = make_event("s1", summary="Edited on target", updated="2024-04-09T00:00:00Z")
    _seed_mirror(fake_calendar, "t1", make_event("s1"), updated="2024-04-08T00:00:00Z")
    state.record_operation(TARGET, WORK, "s1", "update")

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == []
    assert result.loops_skipped == 1
    assert result.processed == 0


def test_should_skip_when_staleness_is_own_write(engine, fake_calendar, state):
    source = make_event("s1", updated="2024-04-09T00:00:10Z")
    _seed_mirror(fake_calendar, "t1", make_event("s1"), updated="2024-04-09T00:00:00Z")
    state.record_operation(WORK, TARGET, "s1", "update")

    result = engine.sync_events(WORK, [source], fake_calendar.list_events(TARGET, None, None))

    assert fake_calendar.writes() == []
    assert result.loops_skipped == 1
    assert result.processed == 0


def test_per_event_errors_are_isolated(engine, fake_calendar):
    fake_calendar.fail("insert", TARGET, RuntimeError("boom"))
    sources = [make_event("s1", summary="A"), make_event("s2", summary="B")]

    result = engine.sync_events(WORK, sources, [])

    assert result.error_count == 1
    assert result.created == 1
    assert "boom" in result.errors[0]


def test_too_many_errors_abandon_calendar(engine, fake_calendar):
    fake_calendar.fail("insert", TARGET, RuntimeError("boom"), times=10)
    sources = [make_event(f"s{i}", summary=f"E{i}") for i in range(10)]

    with pytest.raises(EventSyncError) as exc_info:
        engine.sync_events(WORK, sources, [])

    assert exc_info.value.source_calendar_id == WORK
    # Abandoned on the sixth failure
    assert len(fake_calendar.calls_for("insert")) == 6


def test_errors_at_threshold_do_not_abandon(engine, fake_calendar):
    fake_calendar.fail("insert", TARGET, RuntimeError("boom"), times=5)
    sources = [make_event(f"s{i}", summary=f"E{i}") for i in range(6)]

    result = engine.sync_events(WORK, sources, [])

    assert result.error_count == 5
    assert result.created == 1


def test_sync_source_lists_events_in_window(engine, fake_calendar):
    fake_calendar.add_event(WORK, make_event("s1"))

    result = engine.sync_source(WORK, None, None, [])

    assert ("list", WORK) in fake_calendar.calls
    assert result.created == 1
