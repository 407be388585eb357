"""Sync error taxonomy.

Errors are tagged with an ``ErrorKind`` where they happen (mostly in the
calendar adapter, from the HTTP status) so the orchestrator can decide
whether to retry without re-reading free-text messages.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from googleapiclient.errors import HttpError


class ErrorKind(str, Enum):
    CALENDAR_ACCESS = "CALENDAR_ACCESS"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    EVENT_SYNC = "EVENT_SYNC"
    LOOP_DETECTION = "LOOP_DETECTION"
    UNKNOWN = "UNKNOWN"


# kind -> (recoverable, retryable)
_KIND_POLICY: dict[ErrorKind, tuple[bool, bool]] = {
    ErrorKind.CALENDAR_ACCESS: (False, True),
    ErrorKind.QUOTA_EXCEEDED: (True, True),
    ErrorKind.EVENT_SYNC: (True, True),
    ErrorKind.LOOP_DETECTION: (True, False),
    ErrorKind.UNKNOWN: (False, False),
}

RATE_LIMIT_REASONS = {
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "quotaExceeded",
    "dailyLimitExceeded",
}


class SyncError(Exception):
    """Base class for all sync failures."""

    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        # transient errors are retried by the request gate before surfacing
        self.transient = transient
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def recoverable(self) -> bool:
        return _KIND_POLICY[self.kind][0]

    @property
    def retryable(self) -> bool:
        return _KIND_POLICY[self.kind][1]

    def __str__(self) -> str:
        return self.message


class CalendarAccessError(SyncError):
    """A calendar or event could not be reached (not found, forbidden)."""

    kind = ErrorKind.CALENDAR_ACCESS

    def __init__(
        self,
        message: str,
        calendar_id: Optional[str] = None,
        *,
        status: Optional[int] = None,
        not_found: bool = False,
    ):
        super().__init__(message, status=status)
        self.calendar_id = calendar_id
        self.not_found = not_found


class QuotaExceededError(SyncError):
    """Rate limit or quota exhausted."""

    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, message: str, *, status: Optional[int] = None, transient: bool = True):
        super().__init__(message, status=status, transient=transient)


class EventSyncError(SyncError):
    """Propagation of a single event, or of a whole calendar pass, failed."""

    kind = ErrorKind.EVENT_SYNC

    def __init__(
        self,
        message: str,
        event_id: Optional[str] = None,
        source_calendar_id: Optional[str] = None,
        target_calendar_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.event_id = event_id
        self.source_calendar_id = source_calendar_id
        self.target_calendar_id = target_calendar_id


class LoopDetectionError(SyncError):
    """A propagation was refused because it would feed an update cycle."""

    kind = ErrorKind.LOOP_DETECTION

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.source_id = source_id
        self.target_id = target_id
        self.event_id = event_id


def _http_error_reasons(error: HttpError) -> set[str]:
    reasons = set()
    for detail in getattr(error, "error_details", None) or []:
        if isinstance(detail, dict) and detail.get("reason"):
            reasons.add(detail["reason"])
    reason = getattr(error, "reason", None)
    if reason:
        reasons.add(str(reason))
    return reasons


def from_http_error(
    error: HttpError,
    calendar_id: Optional[str] = None,
    operation: str = "API_CALL",
) -> SyncError:
    """Map a Google API HTTP error to the sync taxonomy."""
    status = error.resp.status
    reasons = _http_error_reasons(error)
    message = f"{operation} failed with HTTP {status}"
    if reasons:
        message += f" ({', '.join(sorted(reasons))})"

    if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
        return QuotaExceededError(message, status=status)

    if status in (401, 403):
        return CalendarAccessError(message, calendar_id, status=status)

    if status in (404, 410):
        return CalendarAccessError(message, calendar_id, status=status, not_found=True)

    if status >= 500:
        return SyncError(message, status=status, transient=True)

    return SyncError(message, status=status)


def is_not_found(error: BaseException) -> bool:
    """Check whether an error means the calendar or event does not exist."""
    return isinstance(error, CalendarAccessError) and error.not_found


def classify_error(
    error: BaseException,
    source_id: Optional[str] = None,
    target_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> SyncError:
    """
    Classify an arbitrary exception into a SyncError.

    Errors raised by the adapter already carry their kind. Only foreign
    exceptions fall back to inspecting the message wording.
    """
    if isinstance(error, SyncError):
        return error

    if isinstance(error, HttpError):
        return from_http_error(error, source_id or target_id)

    message = str(error) or type(error).__name__
    lowered = message.lower()

    if "rate limit" in lowered or "quota" in lowered:
        return QuotaExceededError(message, transient=False)

    if "not found" in lowered or "forbidden" in lowered or "permission" in lowered:
        return CalendarAccessError(
            message, source_id or target_id, not_found="not found" in lowered
        )

    if "loop" in lowered or "circular" in lowered:
        return LoopDetectionError(message, source_id, target_id, event_id)

    if source_id and target_id:
        return EventSyncError(message, event_id, source_id, target_id)

    return SyncError(message)
