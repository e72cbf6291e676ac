"""Transactional store for users, groups, events, attendees and credentials."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from .integrations.google_calendar import OAuthToken
from .models import (
    Attendee,
    Credential,
    Event,
    EventDraft,
    EventStatus,
    Group,
    GroupRole,
    ResponseStatus,
    User,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Lock-guarded store holding immutable record copies.

    Every read returns the current row, so callers always observe the latest
    committed state and never share mutable objects across requests.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._groups: dict[str, Group] = {}
        self._events: dict[str, Event] = {}
        self._attendees: dict[tuple[str, str], Attendee] = {}
        self._credentials: dict[str, Credential] = {}

    # Users and groups --------------------------------------------------------------
    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def add_group(self, group: Group) -> Group:
        with self._lock:
            self._groups[group.id] = group
        return group

    def add_group_member(self, group_id: str, user_id: str, role: GroupRole = GroupRole.MEMBER) -> Group:
        with self._lock:
            group = self._groups[group_id]
            members = dict(group.members)
            members[user_id] = role
            updated = replace(group, members=members)
            self._groups[group_id] = updated
        return updated

    def get_group(self, group_id: str) -> Group | None:
        with self._lock:
            return self._groups.get(group_id)

    # Credentials -------------------------------------------------------------------
    def get_credential(self, user_id: str) -> Credential | None:
        with self._lock:
            return self._credentials.get(user_id)

    def put_credential(self, credential: Credential) -> Credential:
        with self._lock:
            self._credentials[credential.user_id] = credential
        return credential

    def delete_credential(self, user_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(user_id, None) is not None

    # Events ------------------------------------------------------------------------
    def create_event(self, creator_id: str, draft: EventDraft) -> tuple[Event, list[Attendee]]:
        """Insert the event and one PENDING attendee row per invited user."""

        event = Event(
            id=uuid.uuid4().hex,
            title=draft.title,
            start_time=draft.start_time,
            end_time=draft.end_time,
            creator_id=creator_id,
            description=draft.description,
            location=draft.location,
            group_id=draft.group_id,
            recurrence=draft.recurrence,
            reminders=draft.reminders,
        )
        attendees = [Attendee(event_id=event.id, user_id=user_id) for user_id in dict.fromkeys(draft.attendee_ids)]
        with self._lock:
            self._events[event.id] = event
            for attendee in attendees:
                self._attendees[(event.id, attendee.user_id)] = attendee
        logger.debug("Stored event %s with %s attendees", event.id, len(attendees))
        return event, attendees

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id)

    def set_external_event_id(self, event_id: str, external_event_id: str) -> Event:
        with self._lock:
            event = replace(self._events[event_id], external_event_id=external_event_id)
            self._events[event_id] = event
        return event

    def set_event_status(self, event_id: str, status: EventStatus) -> Event:
        with self._lock:
            event = replace(self._events[event_id], status=status)
            self._events[event_id] = event
        return event

    def list_user_events(self, user_id: str) -> list[Event]:
        with self._lock:
            attending = {event_id for (event_id, attendee_id) in self._attendees if attendee_id == user_id}
            events = [
                event
                for event in self._events.values()
                if event.creator_id == user_id or event.id in attending
            ]
        return sorted(events, key=lambda event: event.start_time)

    def list_group_events(self, group_id: str) -> list[Event]:
        with self._lock:
            events = [event for event in self._events.values() if event.group_id == group_id]
        return sorted(events, key=lambda event: event.start_time)

    def list_pending_events(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
        offset: int = 0,
        limit: int = 5,
    ) -> tuple[list[Event], int]:
        """Upcoming, not cancelled events awaiting a response from ``user_id``."""

        reference = now or datetime.now(timezone.utc)
        with self._lock:
            pending = [
                self._events[event_id]
                for (event_id, attendee_id), attendee in self._attendees.items()
                if attendee_id == user_id and attendee.response_status is ResponseStatus.PENDING
            ]
        pending = [
            event
            for event in pending
            if event.end_time >= reference and event.status is not EventStatus.CANCELLED
        ]
        pending.sort(key=lambda event: event.start_time)
        return pending[offset : offset + limit], len(pending)

    # Attendees ---------------------------------------------------------------------
    def list_attendees(self, event_id: str) -> list[Attendee]:
        with self._lock:
            return [attendee for (key, _), attendee in self._attendees.items() if key == event_id]

    def get_attendee(self, event_id: str, user_id: str) -> Attendee | None:
        with self._lock:
            return self._attendees.get((event_id, user_id))

    def update_response(self, event_id: str, user_id: str, status: ResponseStatus) -> Attendee:
        with self._lock:
            attendee = replace(self._attendees[(event_id, user_id)], response_status=status)
            self._attendees[(event_id, user_id)] = attendee
        return attendee


class CredentialStore:
    """Per-user delegated access tokens. A missing row means "not connected"."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def get(self, user_id: str) -> Credential | None:
        return self._store.get_credential(user_id)

    def upsert(self, user_id: str, token: OAuthToken, *, now: datetime | None = None) -> Credential:
        """Replace whatever is stored for ``user_id`` with ``token``."""

        credential = Credential(
            user_id=user_id,
            access_token=token.access_token,
            refresh_token=token.refresh_token or "",
            expires_at=token.expiry_or_default(now=now),
        )
        return self._store.put_credential(credential)

    def save(self, credential: Credential) -> Credential:
        return self._store.put_credential(credential)

    def delete(self, user_id: str) -> bool:
        return self._store.delete_credential(user_id)
