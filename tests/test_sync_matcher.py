"""Tests for matching source events to target events."""

from app.sync.matcher import (
    MATCH_ATTRIBUTES,
    MATCH_KEY,
    find_by_attributes,
    find_target_event,
    index_by_source_key,
)
from app.sync.metadata import build_mirror_payload, sync_key
from tests.fake_calendar import make_event


def _mirror(target_id, source_event, source_calendar_id, **overrides):
    mirror = build_mirror_payload(source_event, source_calendar_id)
    mirror.update({"id": target_id, "status": "confirmed", "updated": "2024-04-01T00:00:00Z"})
    mirror.update(overrides)
    return mirror


def test_index_restricted_to_one_source():
    work_event = make_event("w1")
    home_event = make_event("h1")
    targets = [
        _mirror("t1", work_event, "work"),
        _mirror("t2", home_event, "home"),
        make_event("plain"),
    ]

    index = index_by_source_key(targets, "work")

    assert list(index) == ["work:w1"]
    assert index["work:w1"]["id"] == "t1"


def test_index_prefers_live_mirror_over_cancelled():
    source = make_event("w1")
    targets = [
        _mirror("old", source, "work", status="cancelled"),
        _mirror("new", source, "work"),
    ]

    assert index_by_source_key(targets, "work")["work:w1"]["id"] == "new"


def test_find_by_attributes_exact_match():
    source = make_event("s1", summary="Lunch")
    targets = [
        make_event("t1", summary="Lunch", start="2024-05-01T09:00:00Z", end="2024-05-01T10:30:00Z"),
        make_event("t2", summary="Lunch"),
    ]

    assert find_by_attributes(targets, source)["id"] == "t2"


def test_find_by_attributes_normalises_offsets():
    source = make_event("s1", start="2024-05-01T11:00:00+02:00", end="2024-05-01T12:00:00+02:00")
    target = make_event("t1")

    assert find_by_attributes([target], source)["id"] == "t1"


def test_find_by_attributes_all_day_does_not_match_timed():
    source = {"id": "s1", "summary": "Holiday", "start": {"date": "2024-05-01"}, "end": {"date": "2024-05-02"}}
    timed = {
        "id": "t1",
        "summary": "Holiday",
        "start": {"dateTime": "2024-05-01T00:00:00Z"},
        "end": {"dateTime": "2024-05-02T00:00:00Z"},
    }
    all_day = {"id": "t2", "summary": "Holiday", "start": {"date": "2024-05-01"}, "end": {"date": "2024-05-02"}}

    assert find_by_attributes([timed], source) is None
    assert find_by_attributes([timed, all_day], source)["id"] == "t2"


def test_find_by_attributes_ignores_tagged_cancelled_and_excluded():
    source = make_event("s1", summary="Sync")
    tagged = _mirror("t1", make_event("other", summary="Sync"), "home")
    cancelled = make_event("t2", summary="Sync", status="cancelled")
    excluded = make_event("t3", summary="Sync")

    assert find_by_attributes([tagged, cancelled, excluded], source, exclude_ids={"t3"}) is None


def test_find_by_attributes_is_not_fuzzy():
    source = make_event("s1", summary="Planning")
    targets = [
        make_event("t1", summary="Planning meeting"),
        make_event("t2", summary="Planning", start="2024-05-01T09:01:00Z"),
    ]

    assert find_by_attributes(targets, source) is None


def test_key_match_wins_over_attribute_match():
    source = make_event("s1", summary="Review")
    keyed = _mirror("keyed", make_event("s1", summary="Old title"), "work")
    lookalike = make_event("lookalike", summary="Review")
    targets = [lookalike, keyed]

    key_index = index_by_source_key(targets, "work")
    event, how = find_target_event(source, sync_key(source, "work"), key_index, targets)

    assert how == MATCH_KEY
    assert event["id"] == "keyed"


def test_attribute_fallback_and_no_match():
    source = make_event("s1", summary="Review")
    targets = [make_event("lookalike", summary="Review")]

    event, how = find_target_event(source, "work:s1", {}, targets)
    assert (event["id"], how) == ("lookalike", MATCH_ATTRIBUTES)

    event, how = find_target_event(make_event("s2", summary="Else"), "work:s2", {}, targets)
    assert (event, how) == (None, None)
