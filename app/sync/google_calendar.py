"""Google Calendar API wrapper."""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config import Settings, get_settings
from app.sync.errors import from_http_error, is_not_found
from app.sync.rate_limit import RequestGate
from app.sync.times import to_rfc3339

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
MAX_RESULTS = 2500


def load_credentials(settings: Optional[Settings] = None):
    """Load Google credentials from the configured file."""
    settings = settings or get_settings()
    if settings.google_credentials_type == "service_account":
        return service_account.Credentials.from_service_account_file(
            settings.google_credentials_file, scopes=SCOPES
        )
    return Credentials.from_authorized_user_file(settings.google_credentials_file, SCOPES)


class GoogleCalendarClient:
    """Wrapper around Google Calendar API; every request passes the gate."""

    def __init__(self, credentials, gate: Optional[RequestGate] = None):
        """Initialize with credentials and a shared request gate."""
        self.credentials = credentials
        self.service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        self.gate = gate or RequestGate()

    def _execute(self, make_request: Callable[[], Any], calendar_id: str, operation: str) -> Any:
        def run():
            try:
                return make_request().execute()
            except HttpError as e:
                raise from_http_error(e, calendar_id, operation) from e

        return self.gate.call(run, operation)

    def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int = MAX_RESULTS,
    ) -> list[dict]:
        """
        List all events in a window, including cancelled ones.

        Recurring series are expanded into single occurrences.
        """
        request_params = {
            "calendarId": calendar_id,
            "timeMin": to_rfc3339(time_min),
            "timeMax": to_rfc3339(time_max),
            "showDeleted": True,
            "singleEvents": True,
            "maxResults": max_results,
        }

        all_events = []
        page_token = None

        while True:
            if page_token:
                request_params["pageToken"] = page_token

            params = dict(request_params)
            result = self._execute(
                lambda: self.service.events().list(**params),
                calendar_id,
                f"LIST_EVENTS_{calendar_id}",
            )
            all_events.extend(result.get("items", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Loaded {len(all_events)} events from {calendar_id}")
        return all_events

    def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        """Get a single event, or None if it does not exist."""
        try:
            return self._execute(
                lambda: self.service.events().get(calendarId=calendar_id, eventId=event_id),
                calendar_id,
                f"GET_EVENT_{calendar_id}_{event_id}",
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise

    def insert_event(self, calendar_id: str, event_data: dict) -> dict:
        """Create an event on a calendar."""
        return self._execute(
            lambda: self.service.events().insert(
                calendarId=calendar_id,
                body=event_data,
                sendUpdates="none",
            ),
            calendar_id,
            f"INSERT_EVENT_{calendar_id}",
        )

    def update_event(self, calendar_id: str, event_id: str, event_data: dict) -> dict:
        """Replace an event."""
        return self._execute(
            lambda: self.service.events().update(
                calendarId=calendar_id,
                eventId=event_id,
                body=event_data,
                sendUpdates="none",
            ),
            calendar_id,
            f"UPDATE_EVENT_{calendar_id}_{event_id}",
        )

    def patch_event(self, calendar_id: str, event_id: str, event_patch: dict) -> dict:
        """Patch (partial update) an event."""
        return self._execute(
            lambda: self.service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=event_patch,
                sendUpdates="none",
            ),
            calendar_id,
            f"PATCH_EVENT_{calendar_id}_{event_id}",
        )

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event; an event that is already gone counts as deleted."""
        try:
            self._execute(
                lambda: self.service.events().delete(
                    calendarId=calendar_id,
                    eventId=event_id,
                    sendUpdates="none",
                ),
                calendar_id,
                f"DELETE_EVENT_{calendar_id}_{event_id}",
            )
            return True
        except Exception as e:
            if is_not_found(e):
                logger.info(f"Attempt to delete event {event_id}, which no longer exists")
                return True
            raise

    def get_calendar(self, calendar_id: str) -> Optional[dict]:
        """Get calendar metadata, or None if it does not exist."""
        try:
            return self._execute(
                lambda: self.service.calendars().get(calendarId=calendar_id),
                calendar_id,
                f"GET_CALENDAR_{calendar_id}",
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise


def build_calendar_client(
    gate: Optional[RequestGate] = None,
    settings: Optional[Settings] = None,
) -> GoogleCalendarClient:
    """Create a client from the configured credentials file."""
    settings = settings or get_settings()
    return GoogleCalendarClient(load_credentials(settings), gate=gate)
