from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class EventStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    TENTATIVE = "TENTATIVE"


class ResponseStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TENTATIVE = "TENTATIVE"


class GroupRole(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class SyncOutcome(str, Enum):
    """Result of mirroring a local change onto the provider."""

    SYNCED = "synced"
    NOT_SYNCED = "not_synced"
    FAILED = "failed"
    RECONNECT_REQUIRED = "reconnect_required"


@dataclass(frozen=True)
class User:
    id: str
    email: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    members: dict[str, GroupRole] = field(default_factory=dict)

    def role_of(self, user_id: str) -> GroupRole | None:
        return self.members.get(user_id)


@dataclass(frozen=True)
class Credential:
    """Delegated access tokens of one user. At most one per user."""

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_expired(self, *, now: datetime | None = None) -> bool:
        reference = now or datetime.now(timezone.utc)
        return reference >= self.expires_at


@dataclass(frozen=True)
class ReminderOverride:
    method: str
    minutes: int


@dataclass(frozen=True)
class Reminders:
    use_default: bool = True
    overrides: tuple[ReminderOverride, ...] = ()

    def to_provider(self) -> dict[str, object]:
        body: dict[str, object] = {"useDefault": self.use_default}
        if self.overrides:
            body["overrides"] = [
                {"method": override.method, "minutes": override.minutes}
                for override in self.overrides
            ]
        return body


@dataclass(frozen=True)
class Event:
    """Locally stored study event."""

    id: str
    title: str
    start_time: datetime
    end_time: datetime
    creator_id: str
    description: str | None = None
    location: str | None = None
    group_id: str | None = None
    external_event_id: str | None = None
    status: EventStatus = EventStatus.CONFIRMED
    recurrence: tuple[str, ...] = ()
    reminders: Reminders = field(default_factory=Reminders)

    @property
    def google_calendar_link(self) -> str | None:
        if not self.external_event_id:
            return None
        return f"https://calendar.google.com/calendar/event?eid={self.external_event_id}"


@dataclass(frozen=True)
class Attendee:
    event_id: str
    user_id: str
    response_status: ResponseStatus = ResponseStatus.PENDING


@dataclass(frozen=True)
class EventDraft:
    """Input for creating an event, before it has a local identity."""

    title: str
    start_time: datetime
    end_time: datetime
    attendee_ids: tuple[str, ...] = ()
    description: str | None = None
    location: str | None = None
    group_id: str | None = None
    recurrence: tuple[str, ...] = ()
    reminders: Reminders = field(default_factory=Reminders)


@dataclass(frozen=True)
class ExternalEvent:
    """Identity of the organizer-side event on the provider."""

    id: str
    ical_uid: str | None = None


@dataclass
class PropagationReport:
    propagated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> list[str]:
        return self.propagated + list(self.failed)


@dataclass
class SyncReport:
    organizer: SyncOutcome = SyncOutcome.NOT_SYNCED
    propagation: PropagationReport = field(default_factory=PropagationReport)


def ensure_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
