"""Matching of source events to their target-calendar counterparts."""

from typing import Iterable, Optional

from app.sync.metadata import read_metadata
from app.sync.times import resolve_event_time

MATCH_KEY = "key"
MATCH_ATTRIBUTES = "attributes"


def is_cancelled(event: Optional[dict]) -> bool:
    return bool(event) and event.get("status") == "cancelled"


def index_by_source_key(target_events: Iterable[dict], source_calendar_id: str) -> dict[str, dict]:
    """
    Map sync key -> target event for mirrors of one source calendar.

    When a key appears more than once, a live mirror wins over a cancelled one.
    """
    index: dict[str, dict] = {}
    for event in target_events:
        metadata = read_metadata(event)
        if not metadata or metadata.sync_source != source_calendar_id:
            continue

        existing = index.get(metadata.sync_key)
        if existing is None or (is_cancelled(existing) and not is_cancelled(event)):
            index[metadata.sync_key] = event
    return index


def find_by_attributes(
    target_events: Iterable[dict],
    source_event: dict,
    exclude_ids: Optional[set[str]] = None,
) -> Optional[dict]:
    """
    Find an untagged, live target event identical in summary, start and end.

    Only exact matches count; start/end are compared after normalisation so
    the same instant written with different offsets still matches.
    """
    summary = source_event.get("summary")
    start = resolve_event_time(source_event.get("start"))
    end = resolve_event_time(source_event.get("end"))
    if start is None or end is None:
        return None

    for event in target_events:
        if read_metadata(event) is not None or is_cancelled(event):
            continue
        if exclude_ids and event.get("id") in exclude_ids:
            continue
        if (
            event.get("summary") == summary
            and resolve_event_time(event.get("start")) == start
            and resolve_event_time(event.get("end")) == end
        ):
            return event
    return None


def find_target_event(
    source_event: dict,
    key: str,
    key_index: dict[str, dict],
    target_events: Iterable[dict],
    exclude_ids: Optional[set[str]] = None,
) -> tuple[Optional[dict], Optional[str]]:
    """
    Resolve the target counterpart of a source event.

    Returns ``(event, how)`` where ``how`` is ``"key"``, ``"attributes"``
    or None when the source event has no counterpart yet.
    """
    keyed = key_index.get(key)
    if keyed is not None:
        return keyed, MATCH_KEY

    adopted = find_by_attributes(target_events, source_event, exclude_ids)
    if adopted is not None:
        return adopted, MATCH_ATTRIBUTES

    return None, None
