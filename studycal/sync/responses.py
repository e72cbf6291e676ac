from __future__ import annotations

import logging

from ..errors import ExternalAPIError, TokenRefreshFailure
from ..integrations.google_calendar import GoogleCalendarClient
from ..models import Event, ResponseStatus, SyncOutcome
from ..storage import InMemoryStore
from .credentials import CredentialManager

logger = logging.getLogger(__name__)

PROVIDER_RESPONSES = {
    ResponseStatus.ACCEPTED: "accepted",
    ResponseStatus.DECLINED: "declined",
    ResponseStatus.TENTATIVE: "tentative",
}


def to_provider_response(status: ResponseStatus) -> str:
    return PROVIDER_RESPONSES.get(status, "needsAction")


class ResponseSync:
    """Mirrors an attendee's local response onto the organizer's external event."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        credentials: CredentialManager,
        store: InMemoryStore,
        *,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._store = store
        self._logger = logger_instance or logger

    def sync_response(self, event: Event, attendee_user_id: str, new_status: ResponseStatus) -> SyncOutcome:
        if not event.external_event_id:
            self._logger.debug("Event %s has no external event, response not synced", event.id)
            return SyncOutcome.NOT_SYNCED
        user = self._store.get_user(attendee_user_id)
        email = user.email if user else None
        if not email:
            self._logger.info("Attendee %s has no email, response to event %s not synced", attendee_user_id, event.id)
            return SyncOutcome.NOT_SYNCED

        try:
            credential = self._credentials.obtain_usable_credential(event.creator_id)
        except TokenRefreshFailure as exc:
            self._logger.warning("Organizer %s must reconnect, response to event %s not synced: %s", event.creator_id, event.id, exc)
            return SyncOutcome.RECONNECT_REQUIRED
        if credential is None:
            self._logger.info("Organizer %s is not connected, response to event %s not synced", event.creator_id, event.id)
            return SyncOutcome.NOT_SYNCED

        provider_status = to_provider_response(new_status)
        try:
            external = self._client.get_event(credential.access_token, event.external_event_id)
            attendees = external.get("attendees") or []
            if not any(entry.get("email") == email for entry in attendees):
                self._logger.warning(
                    "Attendee %s is not on external event %s, response not synced", attendee_user_id, event.external_event_id
                )
                return SyncOutcome.NOT_SYNCED
            updated = [
                {**entry, "responseStatus": provider_status} if entry.get("email") == email else entry
                for entry in attendees
            ]
            self._client.patch_event(credential.access_token, event.external_event_id, {"attendees": updated})
        except ExternalAPIError as exc:
            self._logger.error(
                "Failed to sync response %s of attendee %s to external event %s (operation %s, status %s): %s",
                new_status.value,
                attendee_user_id,
                event.external_event_id,
                exc.operation,
                exc.status_code,
                exc,
            )
            return SyncOutcome.FAILED

        self._logger.info(
            "Synced response %s of attendee %s to external event %s", provider_status, attendee_user_id, event.external_event_id
        )
        return SyncOutcome.SYNCED
