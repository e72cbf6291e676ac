from __future__ import annotations

import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from studycal.config import GoogleOAuthConfig
from studycal.errors import ExternalAPIError
from studycal.integrations.google_calendar import OAuthToken
from studycal.models import Credential, Group, GroupRole, User
from studycal.service import CalendarService
from studycal.storage import InMemoryStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeGoogleClient:
    """Stands in for GoogleCalendarClient and records every provider call."""

    def __init__(self, config: GoogleOAuthConfig | None = None) -> None:
        self.config = config or GoogleOAuthConfig(
            client_id="client",
            client_secret="secret",
            redirect_uri="https://app.example.com/api/calendar/callback",
        )
        self._ids = itertools.count(1)
        self.events: dict[str, dict[str, Any]] = {}
        self.inserts: list[tuple[str, dict[str, Any]]] = []
        self.imports: list[tuple[str, dict[str, Any]]] = []
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self.exchanged_codes: list[str] = []
        self.refresh_calls: list[str] = []
        self.exchange_token: OAuthToken | None = OAuthToken(
            access_token="fresh-access", refresh_token="fresh-refresh", expires_at=NOW + timedelta(hours=1)
        )
        self.refresh_token_result: OAuthToken = OAuthToken(
            access_token="refreshed-access", expires_at=NOW + timedelta(hours=1)
        )
        self.refresh_error: ExternalAPIError | None = None
        self.refresh_delay = 0.0
        self.fail_insert = False
        self.fail_get = False
        self.omit_ical_uid = False
        self.failing_import_tokens: set[str] = set()
        self.listed: list[dict[str, Any]] = []

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    def exchange_code(self, authorization_code: str) -> OAuthToken:
        self.exchanged_codes.append(authorization_code)
        if self.exchange_token is None:
            raise ExternalAPIError("exchange_code", "Token endpoint rejected exchange_code", status_code=400)
        return self.exchange_token

    def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            time.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_token_result

    def insert_event(self, access_token: str, body: dict[str, Any], *, send_updates: str = "all") -> dict[str, Any]:
        self.inserts.append((access_token, body))
        if self.fail_insert:
            raise ExternalAPIError("insert", "Calendar insert failed with status 500", status_code=500)
        event_id = f"gcal-{next(self._ids)}"
        created = {**body, "id": event_id}
        if not self.omit_ical_uid:
            created["iCalUID"] = f"{event_id}@google.com"
        self.events[event_id] = created
        return created

    def get_event(self, access_token: str, event_id: str) -> dict[str, Any]:
        if self.fail_get or event_id not in self.events:
            raise ExternalAPIError("get", "Calendar get failed with status 404", status_code=404)
        return dict(self.events[event_id])

    def patch_event(
        self,
        access_token: str,
        event_id: str,
        body: dict[str, Any],
        *,
        send_updates: str | None = None,
    ) -> dict[str, Any]:
        self.patches.append((access_token, event_id, body))
        if event_id not in self.events:
            raise ExternalAPIError("patch", "Calendar patch failed with status 404", status_code=404)
        self.events[event_id] = {**self.events[event_id], **body}
        return self.events[event_id]

    def import_event(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        self.imports.append((access_token, body))
        if access_token in self.failing_import_tokens:
            raise ExternalAPIError("import", "Calendar import failed with status 403", status_code=403)
        return {**body, "id": f"imported-{len(self.imports)}"}

    def list_events(
        self,
        access_token: str,
        *,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 10,
    ) -> list[dict[str, Any]]:
        return self.listed[:max_results]


def _connect(
    store: InMemoryStore,
    user_id: str,
    *,
    expires_at: datetime | None = None,
    refresh_token: str | None = None,
) -> Credential:
    return store.put_credential(
        Credential(
            user_id=user_id,
            access_token=f"access-{user_id}",
            refresh_token=f"refresh-{user_id}" if refresh_token is None else refresh_token,
            expires_at=expires_at or NOW + timedelta(hours=1),
        )
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    for user_id in ("u1", "u2", "u3", "u4"):
        store.add_user(User(id=user_id, email=f"{user_id}@example.edu", name=user_id.upper()))
    store.add_user(User(id="no-email", email=None, name="Anonymous"))
    store.add_group(Group(id="g1", name="Algorithms", members={"u1": GroupRole.MEMBER, "u2": GroupRole.MEMBER}))
    store.add_group_member("g1", "u3", GroupRole.ADMIN)
    return store


@pytest.fixture
def connect_user(store: InMemoryStore) -> Callable[..., Credential]:
    """Store a credential for a user, valid for an hour unless ``expires_at`` says otherwise."""

    def connect(user_id: str, **kwargs: Any) -> Credential:
        return _connect(store, user_id, **kwargs)

    return connect


@pytest.fixture
def client() -> FakeGoogleClient:
    return FakeGoogleClient()


@pytest.fixture
def service(store: InMemoryStore, client: FakeGoogleClient, clock: FakeClock) -> CalendarService:
    return CalendarService(store, client, clock=clock)  # type: ignore[arg-type]
