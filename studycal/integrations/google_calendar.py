from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import quote, urlencode

import requests

from ..config import GoogleOAuthConfig
from ..errors import ExternalAPIError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass(slots=True)
class OAuthToken:
    """Represents an OAuth 2.0 token response."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def expiry_or_default(self, *, now: datetime | None = None) -> datetime:
        if self.expires_at is not None:
            return self.expires_at
        return (now or datetime.now(timezone.utc)) + DEFAULT_TOKEN_LIFETIME


TokenFetcher = Callable[[GoogleOAuthConfig, dict[str, Any]], dict[str, Any]]
ApiRequester = Callable[..., dict[str, Any]]
Clock = Callable[[], datetime]


class GoogleCalendarClient:
    """Client for the Google OAuth token endpoint and the Calendar v3 API.

    The client holds configuration only. Every calendar call receives the
    access token of the user it acts for, so one instance is safely shared
    between concurrent requests.
    """

    def __init__(
        self,
        config: GoogleOAuthConfig,
        *,
        token_fetcher: TokenFetcher | None = None,
        api_requester: ApiRequester | None = None,
        timeout: float = 10.0,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._token_fetcher = token_fetcher or self._default_token_fetcher
        self._api_requester = api_requester or self._default_api_requester
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger

    # Authorization -----------------------------------------------------------------
    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.config.auth_endpoint}?{urlencode(params)}"

    def exchange_code(self, authorization_code: str) -> OAuthToken:
        payload = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        token = self._request_token("exchange_code", payload)
        self._logger.debug("Exchanged authorization code, token expires at %s", token.expires_at)
        return token

    def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        token = self._request_token("refresh", payload)
        self._logger.debug("Refreshed access token expiring at %s", token.expires_at)
        return token

    # Calendar operations -----------------------------------------------------------
    def insert_event(
        self,
        access_token: str,
        body: dict[str, Any],
        *,
        send_updates: str = "all",
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        params = {"sendUpdates": send_updates, "conferenceDataVersion": 1}
        return self._call("insert", "POST", calendar_id, "", access_token, params=params, body=body)

    def get_event(self, access_token: str, event_id: str, *, calendar_id: str = "primary") -> dict[str, Any]:
        return self._call("get", "GET", calendar_id, f"/{quote(event_id, safe='')}", access_token)

    def patch_event(
        self,
        access_token: str,
        event_id: str,
        body: dict[str, Any],
        *,
        send_updates: str | None = None,
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        params = {"sendUpdates": send_updates} if send_updates else None
        return self._call(
            "patch",
            "PATCH",
            calendar_id,
            f"/{quote(event_id, safe='')}",
            access_token,
            params=params,
            body=body,
        )

    def import_event(
        self,
        access_token: str,
        body: dict[str, Any],
        *,
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        return self._call("import", "POST", calendar_id, "/import", access_token, body=body)

    def list_events(
        self,
        access_token: str,
        *,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 10,
        calendar_id: str = "primary",
    ) -> list[dict[str, Any]]:
        params = {
            "timeMin": format_datetime(time_min),
            "timeMax": format_datetime(time_max),
            "maxResults": max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        payload = self._call("list", "GET", calendar_id, "", access_token, params=params)
        items = payload.get("items", [])
        self._logger.info("Loaded %s events from Google Calendar", len(items))
        return items

    # Internal helpers -------------------------------------------------------------
    def _request_token(self, operation: str, payload: dict[str, Any]) -> OAuthToken:
        try:
            token_payload = self._token_fetcher(self.config, payload)
        except ExternalAPIError:
            raise
        except requests.HTTPError as exc:
            status_code, error_code = _describe_http_error(exc)
            self._logger.warning("Token request %s rejected (%s, %s)", operation, status_code, error_code)
            raise ExternalAPIError(
                operation,
                f"Token endpoint rejected {operation}",
                status_code=status_code,
                error_code=error_code,
            ) from exc
        except Exception as exc:
            self._logger.exception("Token request %s failed: %s", operation, exc)
            raise ExternalAPIError(operation, f"Token request {operation} failed") from exc
        return _parse_token_response(operation, token_payload, now=self._clock())

    def _call(
        self,
        operation: str,
        method: str,
        calendar_id: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.config.api_base_url}/calendars/{quote(calendar_id, safe='')}/events{path}"
        try:
            return self._api_requester(method, url, access_token=access_token, params=params, json=body)
        except ExternalAPIError:
            raise
        except requests.HTTPError as exc:
            status_code, error_code = _describe_http_error(exc)
            self._logger.warning("Calendar %s %s returned %s (%s)", method, url, status_code, error_code)
            raise ExternalAPIError(
                operation,
                f"Calendar {operation} failed with status {status_code}",
                status_code=status_code,
                error_code=error_code,
            ) from exc
        except Exception as exc:
            self._logger.exception("Calendar %s %s failed: %s", method, url, exc)
            raise ExternalAPIError(operation, f"Calendar {operation} failed") from exc

    def _default_token_fetcher(self, config: GoogleOAuthConfig, payload: dict[str, Any]) -> dict[str, Any]:
        response = requests.post(config.token_endpoint, data=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _default_api_requester(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = requests.request(
            method,
            url,
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
            json=json,
            timeout=self.timeout,
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()


def _parse_token_response(operation: str, payload: dict[str, Any], *, now: datetime) -> OAuthToken:
    access_token = payload.get("access_token")
    if not access_token:
        raise ExternalAPIError(operation, "Token response did not contain an access token")
    expires_at: datetime | None = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, (int, float)):
        expires_at = now + timedelta(seconds=float(expires_in))
    return OAuthToken(
        access_token=access_token,
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
        token_type=payload.get("token_type", "Bearer"),
        scope=payload.get("scope"),
    )


def _describe_http_error(exc: requests.HTTPError) -> tuple[int | None, str | None]:
    response = exc.response
    if response is None:
        return None, None
    error_code: str | None = None
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, str):
            error_code = error
        elif isinstance(error, dict):
            error_code = error.get("status") or error.get("message")
    return response.status_code, error_code


def format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
