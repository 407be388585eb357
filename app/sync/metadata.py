"""Sync metadata attached to mirrored events.

Mirrors on the target calendar carry a private ``extendedProperties`` block
that links them back to the source event they were copied from.
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.sync.times import utc_now

SYNC_KEY = "SYNC_KEY"
SYNC_SOURCE = "SYNC_SOURCE"
SYNC_ORIGINAL_ID = "SYNC_ORIGINAL_ID"
SYNC_VERSION = "SYNC_VERSION"
SYNC_UPDATED = "SYNC_UPDATED"

# Fields copied between a source event and its mirror
CONTENT_FIELDS = (
    "summary",
    "description",
    "location",
    "start",
    "end",
    "attendees",
    "reminders",
    "transparency",
    "visibility",
)


@dataclass(frozen=True)
class SyncMetadata:
    """Private link from a mirror event to its source event."""

    sync_key: str
    sync_source: str
    sync_original_id: str
    sync_version: Optional[str] = None
    sync_updated: Optional[str] = None


def sync_key(event: dict, source_calendar_id: str) -> str:
    """Stable join key between a source event and its mirror."""
    return f"{source_calendar_id}:{event['id']}"


def generate_sync_version() -> str:
    """New version token; time-ordered, unique per call."""
    return f"{time.time_ns()}-{uuid.uuid4().hex[:8]}"


def _private_properties(event: dict) -> dict:
    extended = event.get("extendedProperties") or {}
    if not isinstance(extended, dict):
        return {}
    private = extended.get("private") or {}
    return private if isinstance(private, dict) else {}


def read_metadata(event: dict) -> Optional[SyncMetadata]:
    """Extract sync metadata from an event, or None if it is not a mirror."""
    private = _private_properties(event)
    key = private.get(SYNC_KEY)
    if not key:
        return None

    source = private.get(SYNC_SOURCE)
    original_id = private.get(SYNC_ORIGINAL_ID)
    if not source or not original_id:
        # Older mirrors only stored the key
        source, _, original_id = str(key).rpartition(":")
        if not source or not original_id:
            return None

    return SyncMetadata(
        sync_key=key,
        sync_source=source,
        sync_original_id=original_id,
        sync_version=private.get(SYNC_VERSION),
        sync_updated=private.get(SYNC_UPDATED),
    )


def _copy_content(event: dict) -> dict:
    return {
        name: event[name]
        for name in CONTENT_FIELDS
        if event.get(name) is not None
    }


def build_mirror_payload(
    source_event: dict,
    source_calendar_id: str,
    now: Optional[datetime] = None,
) -> dict:
    """Build the target-calendar payload mirroring a source event."""
    payload = _copy_content(source_event)
    payload["extendedProperties"] = {
        "private": {
            SYNC_KEY: sync_key(source_event, source_calendar_id),
            SYNC_SOURCE: source_calendar_id,
            SYNC_ORIGINAL_ID: source_event["id"],
            SYNC_VERSION: generate_sync_version(),
            SYNC_UPDATED: (now or utc_now()).isoformat(),
        }
    }
    return payload


def build_reverse_payload(target_event: dict, now: Optional[datetime] = None) -> dict:
    """Build the source-calendar payload carrying edits made on a mirror."""
    payload = _copy_content(target_event)
    payload["extendedProperties"] = {
        "private": {SYNC_UPDATED: (now or utc_now()).isoformat()}
    }
    return payload


def build_touch_patch(target_event: dict) -> dict:
    """Patch that rewrites a mirror's own summary and metadata."""
    patch = {"extendedProperties": target_event.get("extendedProperties") or {}}
    if target_event.get("summary") is not None:
        patch["summary"] = target_event["summary"]
    return patch
