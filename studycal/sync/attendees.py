from __future__ import annotations

import logging
from typing import Sequence

from ..errors import ExternalAPIError, TokenRefreshFailure
from ..integrations.google_calendar import GoogleCalendarClient
from ..models import Attendee, Event, ExternalEvent, PropagationReport
from .credentials import CredentialManager
from .events import build_event_body

logger = logging.getLogger(__name__)


class AttendeePropagator:
    """Copies the organizer's external event into each connected attendee's calendar."""

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

    def propagate_to_attendees(
        self,
        organizer_id: str,
        external_event: ExternalEvent,
        attendees: Sequence[Attendee],
        event: Event,
        attendee_emails: Sequence[str] = (),
    ) -> PropagationReport:
        """Import the event for every attendee except the organizer, one at a time.

        Each attendee is handled in isolation: an attendee without a
        connection is skipped and a failed import is recorded, neither stops
        the loop.
        """

        report = PropagationReport()
        others = [attendee for attendee in attendees if attendee.user_id != organizer_id]
        if not external_event.ical_uid:
            self._logger.warning(
                "External event %s has no iCalUID, cannot propagate event %s", external_event.id, event.id
            )
            report.skipped.extend(attendee.user_id for attendee in others)
            return report

        body = build_event_body(event, attendee_emails)
        body["iCalUID"] = external_event.ical_uid
        body["status"] = "confirmed"

        for attendee in others:
            user_id = attendee.user_id
            try:
                credential = self._credentials.obtain_usable_credential(user_id)
            except TokenRefreshFailure as exc:
                self._logger.warning("Attendee %s must reconnect, event %s not propagated: %s", user_id, event.id, exc)
                report.failed[user_id] = str(exc)
                continue
            if credential is None:
                self._logger.debug("Attendee %s has not connected Google Calendar", user_id)
                report.skipped.append(user_id)
                continue

            try:
                self._client.import_event(credential.access_token, body)
            except ExternalAPIError as exc:
                self._logger.error(
                    "Failed to import external event %s (iCalUID %s) for attendee %s (status %s): %s",
                    external_event.id,
                    external_event.ical_uid,
                    user_id,
                    exc.status_code,
                    exc,
                )
                report.failed[user_id] = str(exc)
                continue
            self._logger.debug("Propagated event %s to attendee %s", event.id, user_id)
            report.propagated.append(user_id)

        self._logger.info(
            "Propagated event %s: %s imported, %s skipped, %s failed",
            event.id,
            len(report.propagated),
            len(report.skipped),
            len(report.failed),
        )
        return report
