"""REST API for calendar connection, study events and attendance responses."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ..config import Settings, load_settings
from ..errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    AuthorizationFlowError,
    ConfigurationError,
    CredentialAbsent,
    ExternalAPIError,
    NotFound,
    StudyCalError,
    TokenRefreshFailure,
    ValidationError,
)
from ..integrations.google_calendar import GoogleCalendarClient
from ..models import (
    Attendee,
    Event,
    EventDraft,
    ReminderOverride,
    Reminders,
    SyncReport,
    User,
    ensure_utc,
)
from ..service import CalendarService
from ..storage import InMemoryStore

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[StudyCalError], int]] = [
    (AuthenticationRequired, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationDenied, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (CredentialAbsent, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (TokenRefreshFailure, status.HTTP_401_UNAUTHORIZED),
    (ExternalAPIError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReminderOverridePayload(CamelModel):
    method: str = Field(pattern="^(email|popup)$")
    minutes: int = Field(ge=0, le=40320)


class RemindersPayload(CamelModel):
    use_default: bool = True
    overrides: List[ReminderOverridePayload] = Field(default_factory=list)

    def build(self) -> Reminders:
        return Reminders(
            use_default=self.use_default,
            overrides=tuple(ReminderOverride(item.method, item.minutes) for item in self.overrides),
        )


class EventCreateRequest(CamelModel):
    title: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    group_id: Optional[str] = None
    attendee_ids: List[str] = Field(default_factory=list)
    recurrence: List[str] = Field(default_factory=list)
    reminders: Optional[RemindersPayload] = None

    @model_validator(mode="after")
    def _check_times(self) -> "EventCreateRequest":
        if ensure_utc(self.end_time) <= ensure_utc(self.start_time):
            raise ValueError("endTime must be after startTime")
        return self

    def build_draft(self) -> EventDraft:
        return EventDraft(
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            attendee_ids=tuple(self.attendee_ids),
            description=self.description,
            location=self.location,
            group_id=self.group_id,
            recurrence=tuple(self.recurrence),
            reminders=self.reminders.build() if self.reminders else Reminders(),
        )


class RespondRequest(CamelModel):
    event_id: str = Field(min_length=1)
    response: str


class AttendeeResponse(CamelModel):
    user_id: str
    name: Optional[str]
    email: Optional[str]
    response: str


class EventResponse(CamelModel):
    id: str
    title: str
    description: Optional[str]
    location: Optional[str]
    start_time: datetime
    end_time: datetime
    creator_id: str
    group_id: Optional[str]
    status: str
    external_event_id: Optional[str]
    google_calendar_link: Optional[str]
    recurrence: List[str]
    attendees: List[AttendeeResponse]


class SyncSummary(CamelModel):
    organizer: str
    propagated: List[str]
    skipped: List[str]
    failed: Dict[str, str]


class CreateEventResponse(CamelModel):
    success: bool = True
    event: EventResponse
    sync: SyncSummary


class CancelEventResponse(CamelModel):
    event: EventResponse
    sync_outcome: str


class RespondResponse(CamelModel):
    success: bool = True
    attendee: AttendeeResponse
    sync_outcome: str


class StatusResponse(CamelModel):
    connected: bool


class DisconnectResponse(CamelModel):
    success: bool = True


class AuthUrlResponse(CamelModel):
    url: str


class ExternalEventsResponse(CamelModel):
    connected: bool = True
    events: List[Dict[str, Any]]


class EventListResponse(CamelModel):
    events: List[EventResponse]


class PaginationResponse(CamelModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class PendingEventsResponse(CamelModel):
    events: List[EventResponse]
    pagination: PaginationResponse


def _serialize_attendee(store: InMemoryStore, attendee: Attendee) -> AttendeeResponse:
    user = store.get_user(attendee.user_id)
    return AttendeeResponse(
        user_id=attendee.user_id,
        name=user.name if user else None,
        email=user.email if user else None,
        response=attendee.response_status.value,
    )


def _serialize_event(store: InMemoryStore, event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        title=event.title,
        description=event.description,
        location=event.location,
        start_time=event.start_time,
        end_time=event.end_time,
        creator_id=event.creator_id,
        group_id=event.group_id,
        status=event.status.value,
        external_event_id=event.external_event_id,
        google_calendar_link=event.google_calendar_link,
        recurrence=list(event.recurrence),
        attendees=[_serialize_attendee(store, attendee) for attendee in store.list_attendees(event.id)],
    )


def _serialize_sync(report: SyncReport) -> SyncSummary:
    return SyncSummary(
        organizer=report.organizer.value,
        propagated=report.propagation.propagated,
        skipped=report.propagation.skipped,
        failed=report.propagation.failed,
    )


def _profile_redirect(profile_url: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in profile_url else "?"
    return RedirectResponse(f"{profile_url}{separator}{urlencode(params)}", status_code=status.HTTP_302_FOUND)


def _error_response(exc: StudyCalError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    content: dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, (CredentialAbsent, TokenRefreshFailure)):
        content["connected"] = False
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    settings: Settings | None = None,
    *,
    store: InMemoryStore | None = None,
    client: GoogleCalendarClient | None = None,
    service: CalendarService | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    if service is None:
        store = store or InMemoryStore()
        client = client or GoogleCalendarClient(settings.google, timeout=settings.request_timeout)
        service = CalendarService(store, client, state_max_age=settings.state_max_age)
    store = service.store

    app = FastAPI(title="Study Calendar Sync API")
    app.state.service = service

    @app.exception_handler(StudyCalError)
    async def handle_error(request: Request, exc: StudyCalError) -> JSONResponse:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return _error_response(exc)

    def current_user(x_user_id: Optional[str] = Header(default=None)) -> User:
        return service.require_user(x_user_id)

    # Connection --------------------------------------------------------------------
    @app.get("/api/calendar/authorize")
    def authorize(user: User = Depends(current_user)) -> RedirectResponse:
        url = service.begin_authorization(user.id)
        return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

    @app.get("/api/calendar/auth-url", response_model=AuthUrlResponse)
    def auth_url(user: User = Depends(current_user)) -> AuthUrlResponse:
        return AuthUrlResponse(url=service.begin_authorization(user.id))

    @app.get("/api/calendar/callback")
    def callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RedirectResponse:
        if error:
            logger.warning("Provider returned OAuth error %s", error)
            return _profile_redirect(settings.profile_url, error=error)
        try:
            credential = service.complete_authorization(code, state)
        except AuthorizationFlowError as exc:
            logger.warning("Calendar authorization failed (%s): %s", exc.kind, exc)
            return _profile_redirect(settings.profile_url, error=exc.kind)
        except Exception:
            logger.exception("Unhandled error in OAuth callback")
            return _profile_redirect(settings.profile_url, error="unknown_error")
        logger.info("User %s connected Google Calendar", credential.user_id)
        return _profile_redirect(settings.profile_url, connected="true")

    @app.post("/api/calendar/disconnect", response_model=DisconnectResponse)
    def disconnect(user: User = Depends(current_user)) -> DisconnectResponse:
        service.disconnect(user.id)
        return DisconnectResponse()

    @app.get("/api/calendar/status", response_model=StatusResponse)
    def connection_status(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        user: User = Depends(current_user),
    ) -> StatusResponse:
        return StatusResponse(connected=service.is_connected(user_id or user.id))

    @app.get("/api/calendar/events", response_model=ExternalEventsResponse)
    def external_events(
        time_min: Optional[datetime] = Query(default=None, alias="timeMin"),
        time_max: Optional[datetime] = Query(default=None, alias="timeMax"),
        max_results: int = Query(default=10, alias="maxResults", gt=0, le=250),
        user: User = Depends(current_user),
    ) -> ExternalEventsResponse:
        events = service.list_external_events(
            user.id, time_min=time_min, time_max=time_max, max_results=max_results
        )
        return ExternalEventsResponse(events=events)

    # Events ------------------------------------------------------------------------
    @app.post("/api/calendar/events/create", response_model=CreateEventResponse)
    def create_event(payload: EventCreateRequest, user: User = Depends(current_user)) -> CreateEventResponse:
        event, _, report = service.create_event(user.id, payload.build_draft())
        return CreateEventResponse(event=_serialize_event(store, event), sync=_serialize_sync(report))

    @app.get("/api/calendar/events/{event_id}", response_model=EventResponse)
    def event_detail(event_id: str, user: User = Depends(current_user)) -> EventResponse:
        return _serialize_event(store, service.get_event(user.id, event_id))

    @app.post("/api/calendar/events/{event_id}/cancel", response_model=CancelEventResponse)
    def cancel_event(event_id: str, user: User = Depends(current_user)) -> CancelEventResponse:
        event, outcome = service.cancel_event(user.id, event_id)
        return CancelEventResponse(event=_serialize_event(store, event), sync_outcome=outcome.value)

    @app.post("/api/calendar/respond", response_model=RespondResponse)
    def respond(payload: RespondRequest, user: User = Depends(current_user)) -> RespondResponse:
        attendee, outcome = service.respond(user.id, payload.event_id, payload.response)
        return RespondResponse(attendee=_serialize_attendee(store, attendee), sync_outcome=outcome.value)

    @app.get("/api/calendar/pending-events", response_model=PendingEventsResponse)
    def pending_events(page: int = 1, limit: int = 5, user: User = Depends(current_user)) -> PendingEventsResponse:
        result = service.pending_events(user.id, page=page, limit=limit)
        return PendingEventsResponse(
            events=[_serialize_event(store, event) for event in result.items],
            pagination=PaginationResponse(
                page=result.page,
                limit=result.limit,
                total_items=result.total_items,
                total_pages=result.total_pages,
            ),
        )

    @app.get("/api/calendar/my-events", response_model=EventListResponse)
    def my_events(user: User = Depends(current_user)) -> EventListResponse:
        return EventListResponse(events=[_serialize_event(store, event) for event in service.user_events(user.id)])

    @app.get("/api/groups/{group_id}/events", response_model=EventListResponse)
    def group_events(group_id: str, user: User = Depends(current_user)) -> EventListResponse:
        events = service.group_events(user.id, group_id)
        return EventListResponse(events=[_serialize_event(store, event) for event in events])

    return app


app = create_app()
