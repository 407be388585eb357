"""Timestamp helpers for Google Calendar event payloads."""

from datetime import date, datetime, timezone
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

EventTime = tuple[str, Union[date, datetime]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_rfc3339(value: datetime) -> str:
    """Format an aware datetime the way the Calendar API expects it."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def updated_at(event: dict) -> datetime:
    """Last-modified time of an event; events without one sort first."""
    return parse_rfc3339(event.get("updated")) or EPOCH


def resolve_event_time(value: Optional[dict]) -> Optional[EventTime]:
    """
    Normalise an event ``start``/``end`` block for comparison.

    All-day values resolve to ``("date", date)``, timed values to
    ``("instant", utc_datetime)`` so equal instants written with different
    offsets compare equal while all-day and timed values never do.
    """
    if not value:
        return None

    if value.get("dateTime"):
        instant = parse_rfc3339(value["dateTime"])
        return ("instant", instant) if instant else None

    if value.get("date"):
        try:
            return ("date", date.fromisoformat(value["date"]))
        except ValueError:
            return None

    return None
