"""Request-level operations.

Every operation commits the local change first and only then talks to the
provider. Provider trouble degrades the result to "not synced" and never
undoes the local write.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    CredentialAbsent,
    NotFound,
    ValidationError,
)
from .integrations.google_calendar import GoogleCalendarClient
from .models import (
    Attendee,
    Credential,
    Event,
    EventDraft,
    EventStatus,
    GroupRole,
    ResponseStatus,
    SyncOutcome,
    SyncReport,
    User,
    ensure_utc,
)
from .storage import CredentialStore, InMemoryStore
from .sync.attendees import AttendeePropagator
from .sync.credentials import CredentialManager
from .sync.events import EventSynchronizer
from .sync.handshake import STATE_MAX_AGE, AuthorizationHandshake
from .sync.responses import ResponseSync

logger = logging.getLogger(__name__)

RESPONSES = (ResponseStatus.ACCEPTED, ResponseStatus.DECLINED, ResponseStatus.TENTATIVE)
MAX_PAGE_SIZE = 20
DEFAULT_PAGE_SIZE = 5


@dataclass
class Page:
    items: list[Event]
    page: int
    limit: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.limit) if self.limit else 0


class CalendarService:
    def __init__(
        self,
        store: InMemoryStore,
        client: GoogleCalendarClient,
        *,
        state_max_age: timedelta = STATE_MAX_AGE,
        clock: Callable[[], datetime] | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger
        self.credentials = CredentialManager(client, CredentialStore(store), clock=self._clock)
        self.handshake = AuthorizationHandshake(client, store, max_age=state_max_age, clock=self._clock)
        self.synchronizer = EventSynchronizer(client, self.credentials)
        self.propagator = AttendeePropagator(client, self.credentials)
        self.responses = ResponseSync(client, self.credentials, store)
        self._client = client

    # Session -----------------------------------------------------------------------
    def require_user(self, user_id: str | None) -> User:
        if not user_id:
            raise AuthenticationRequired("You must be logged in")
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationRequired("Invalid session")
        return user

    # Connection --------------------------------------------------------------------
    def begin_authorization(self, user_id: str) -> str:
        return self.handshake.begin_authorization(user_id)

    def complete_authorization(self, code: str | None, state: str | None) -> Credential:
        return self.handshake.complete_authorization(code, state)

    def disconnect(self, user_id: str) -> None:
        if not self.credentials.disconnect(user_id):
            raise CredentialAbsent("No Google Calendar connection found")

    def is_connected(self, user_id: str) -> bool:
        return self.credentials.is_connected(user_id)

    def list_external_events(
        self,
        user_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = 10,
    ) -> list[dict[str, Any]]:
        credential = self.credentials.obtain_usable_credential(user_id)
        if credential is None:
            raise CredentialAbsent("Google Calendar not connected")
        start = ensure_utc(time_min) if time_min else self._clock()
        end = ensure_utc(time_max) if time_max else start + timedelta(days=30)
        if end <= start:
            raise ValidationError("timeMax must be after timeMin")
        return self._client.list_events(
            credential.access_token, time_min=start, time_max=end, max_results=max_results
        )

    # Events ------------------------------------------------------------------------
    def create_event(self, creator_id: str, draft: EventDraft) -> tuple[Event, list[Attendee], SyncReport]:
        draft = self._validate_draft(creator_id, draft)
        event, attendees = self.store.create_event(creator_id, draft)
        self._logger.info("Created event %s for creator %s", event.id, creator_id)

        report = SyncReport()
        emails = self._attendee_emails(attendees)
        external, report.organizer = self.synchronizer.create_external(creator_id, event, emails)
        if external is None:
            return event, attendees, report

        event = self.store.set_external_event_id(event.id, external.id)
        report.propagation = self.propagator.propagate_to_attendees(creator_id, external, attendees, event, emails)
        if report.propagation.failed:
            self._logger.warning(
                "Event %s could not be propagated to %s", event.id, ", ".join(sorted(report.propagation.failed))
            )
        return event, attendees, report

    def cancel_event(self, user_id: str, event_id: str) -> tuple[Event, SyncOutcome]:
        event = self._get_event(event_id)
        if event.creator_id != user_id and not self._is_group_admin(event.group_id, user_id):
            raise AuthorizationDenied("Only group administrators or event creators can cancel events")

        event = self.store.set_event_status(event.id, EventStatus.CANCELLED)
        self._logger.info("Event %s cancelled by %s", event.id, user_id)
        if not event.external_event_id:
            return event, SyncOutcome.NOT_SYNCED
        return event, self.synchronizer.cancel_external(event.creator_id, event.external_event_id)

    def respond(self, user_id: str, event_id: str, response: ResponseStatus | str) -> tuple[Attendee, SyncOutcome]:
        status = _parse_response(response)
        event = self._get_event(event_id)
        if self.store.get_attendee(event.id, user_id) is None:
            raise AuthorizationDenied("You are not an attendee of this event")

        attendee = self.store.update_response(event.id, user_id, status)
        self._logger.info("Attendee %s responded %s to event %s", user_id, status.value, event.id)
        return attendee, self.responses.sync_response(event, user_id, status)

    # Listings ----------------------------------------------------------------------
    def get_event(self, user_id: str, event_id: str) -> Event:
        """Return an event visible to its creator, its attendees and its group's members."""

        event = self._get_event(event_id)
        if event.creator_id == user_id or self.store.get_attendee(event.id, user_id) is not None:
            return event
        if event.group_id is not None:
            group = self.store.get_group(event.group_id)
            if group is not None and group.role_of(user_id) is not None:
                return event
        raise AuthorizationDenied("You do not have access to this event")

    def pending_events(self, user_id: str, *, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Page:
        page = page if page > 0 else 1
        limit = limit if 0 < limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE
        items, total = self.store.list_pending_events(
            user_id, now=self._clock(), offset=(page - 1) * limit, limit=limit
        )
        return Page(items=items, page=page, limit=limit, total_items=total)

    def user_events(self, user_id: str) -> list[Event]:
        return self.store.list_user_events(user_id)

    def group_events(self, user_id: str, group_id: str) -> list[Event]:
        group = self.store.get_group(group_id)
        if group is None:
            raise NotFound("Group not found")
        if group.role_of(user_id) is None:
            raise AuthorizationDenied("You are not a member of this group")
        return self.store.list_group_events(group_id)

    # Internal helpers -------------------------------------------------------------
    def _validate_draft(self, creator_id: str, draft: EventDraft) -> EventDraft:
        title = draft.title.strip() if draft.title else ""
        if not title:
            raise ValidationError("Title is required")
        start = ensure_utc(draft.start_time)
        end = ensure_utc(draft.end_time)
        if end <= start:
            raise ValidationError("End time must be after start time")

        attendee_ids = list(dict.fromkeys(draft.attendee_ids))
        unknown = [user_id for user_id in attendee_ids if self.store.get_user(user_id) is None]
        if unknown:
            raise ValidationError(f"Unknown attendees: {', '.join(unknown)}")
        if creator_id not in attendee_ids:
            attendee_ids.append(creator_id)

        if draft.group_id is not None:
            group = self.store.get_group(draft.group_id)
            if group is None:
                raise ValidationError(f"Unknown group: {draft.group_id}")
            if group.role_of(creator_id) is None:
                raise AuthorizationDenied("You are not a member of this group")
            outsiders = [user_id for user_id in attendee_ids if group.role_of(user_id) is None]
            if outsiders:
                raise ValidationError(f"Some attendees are not members of this group: {', '.join(outsiders)}")

        return replace(draft, title=title, start_time=start, end_time=end, attendee_ids=tuple(attendee_ids))

    def _attendee_emails(self, attendees: list[Attendee]) -> list[str]:
        emails = []
        for attendee in attendees:
            user = self.store.get_user(attendee.user_id)
            if user is not None and user.email:
                emails.append(user.email)
        return emails

    def _get_event(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFound("Event not found")
        return event

    def _is_group_admin(self, group_id: str | None, user_id: str) -> bool:
        if group_id is None:
            return False
        group = self.store.get_group(group_id)
        return group is not None and group.role_of(user_id) is GroupRole.ADMIN


def _parse_response(response: ResponseStatus | str) -> ResponseStatus:
    try:
        status = ResponseStatus(response)
    except ValueError as exc:
        raise ValidationError("Invalid response status. Must be ACCEPTED, DECLINED, or TENTATIVE") from exc
    if status not in RESPONSES:
        raise ValidationError("Invalid response status. Must be ACCEPTED, DECLINED, or TENTATIVE")
    return status
