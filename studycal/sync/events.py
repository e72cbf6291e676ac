from __future__ import annotations

import logging
from typing import Any, Sequence

from ..errors import ExternalAPIError, TokenRefreshFailure
from ..integrations.google_calendar import GoogleCalendarClient, format_datetime
from ..models import Event, ExternalEvent, SyncOutcome
from .credentials import CredentialManager

logger = logging.getLogger(__name__)


def build_event_body(event: Event, attendee_emails: Sequence[str]) -> dict[str, Any]:
    """Map a local event onto the provider's event resource."""

    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
        "start": {"dateTime": format_datetime(event.start_time), "timeZone": "UTC"},
        "end": {"dateTime": format_datetime(event.end_time), "timeZone": "UTC"},
        "attendees": [{"email": email, "responseStatus": "needsAction"} for email in attendee_emails if email],
        "reminders": event.reminders.to_provider(),
        "guestsCanSeeOtherGuests": True,
    }
    if event.recurrence:
        body["recurrence"] = list(event.recurrence)
    return body


class EventSynchronizer:
    """Creates and cancels the organizer-side copy of a local event."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        credentials: CredentialManager,
        *,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._logger = logger_instance or logger

    def create_external(
        self,
        organizer_id: str,
        event: Event,
        attendee_emails: Sequence[str],
    ) -> tuple[ExternalEvent | None, SyncOutcome]:
        """Insert ``event`` into the organizer's calendar and send invitations.

        Never raises: a missing connection or a provider failure yields no
        external event, and the local event stands on its own.
        """

        try:
            credential = self._credentials.obtain_usable_credential(organizer_id)
        except TokenRefreshFailure as exc:
            self._logger.warning("Skipping sync of event %s, organizer %s must reconnect: %s", event.id, organizer_id, exc)
            return None, SyncOutcome.RECONNECT_REQUIRED
        if credential is None:
            self._logger.info("Organizer %s has not connected Google Calendar, skipping sync of event %s", organizer_id, event.id)
            return None, SyncOutcome.NOT_SYNCED

        body = build_event_body(event, attendee_emails)
        try:
            created = self._client.insert_event(credential.access_token, body, send_updates="all")
        except ExternalAPIError as exc:
            self._logger.error(
                "Failed to create external event for event %s (organizer %s, operation %s, status %s): %s",
                event.id,
                organizer_id,
                exc.operation,
                exc.status_code,
                exc,
            )
            return None, SyncOutcome.FAILED

        external_id = created.get("id")
        if not external_id:
            self._logger.error("Provider returned no id for event %s of organizer %s", event.id, organizer_id)
            return None, SyncOutcome.FAILED
        self._logger.info("Created external event %s for event %s", external_id, event.id)
        return ExternalEvent(id=external_id, ical_uid=created.get("iCalUID")), SyncOutcome.SYNCED

    def cancel_external(self, organizer_id: str, external_event_id: str) -> SyncOutcome:
        """Mark the organizer-side event cancelled. Failures are logged only."""

        try:
            credential = self._credentials.obtain_usable_credential(organizer_id)
        except TokenRefreshFailure as exc:
            self._logger.warning("Cannot cancel external event %s, organizer %s must reconnect: %s", external_event_id, organizer_id, exc)
            return SyncOutcome.RECONNECT_REQUIRED
        if credential is None:
            self._logger.info("Organizer %s is not connected, external event %s left as is", organizer_id, external_event_id)
            return SyncOutcome.NOT_SYNCED

        try:
            self._client.patch_event(
                credential.access_token,
                external_event_id,
                {"status": "cancelled"},
                send_updates="all",
            )
        except ExternalAPIError as exc:
            self._logger.error(
                "Failed to cancel external event %s of organizer %s (status %s): %s",
                external_event_id,
                organizer_id,
                exc.status_code,
                exc,
            )
            return SyncOutcome.FAILED
        self._logger.info("Cancelled external event %s", external_event_id)
        return SyncOutcome.SYNCED
