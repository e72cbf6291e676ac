from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)


@dataclass(slots=True)
class GoogleOAuthConfig:
    """Configuration required to act against Google Calendar on a user's behalf."""

    client_id: str
    client_secret: str
    redirect_uri: str
    auth_endpoint: str = GOOGLE_AUTH_ENDPOINT
    token_endpoint: str = GOOGLE_TOKEN_ENDPOINT
    api_base_url: str = GOOGLE_CALENDAR_API
    scopes: tuple[str, ...] = CALENDAR_SCOPES

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass(slots=True)
class Settings:
    google: GoogleOAuthConfig
    profile_url: str = "/user/profile"
    state_max_age: timedelta = field(default=timedelta(minutes=15))
    request_timeout: float = 10.0
    log_level: str = "INFO"


def _get_timeout() -> float:
    raw = os.getenv("STUDYCAL_REQUEST_TIMEOUT", "10")
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid STUDYCAL_REQUEST_TIMEOUT %s, falling back to 10 seconds", raw)
        return 10.0
    if value <= 0:
        logger.warning("STUDYCAL_REQUEST_TIMEOUT must be positive, falling back to 10 seconds")
        return 10.0
    return value


def load_settings() -> Settings:
    google = GoogleOAuthConfig(
        client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
        client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
        redirect_uri=os.getenv("GOOGLE_REDIRECT_URI", ""),
    )
    if not google.client_id:
        logger.warning("GOOGLE_CLIENT_ID is not set")
    if not google.client_secret:
        logger.warning("GOOGLE_CLIENT_SECRET is not set")
    if not google.redirect_uri:
        logger.warning("GOOGLE_REDIRECT_URI is not set")
    return Settings(
        google=google,
        profile_url=os.getenv("STUDYCAL_PROFILE_URL", "/user/profile"),
        request_timeout=_get_timeout(),
        log_level=os.getenv("STUDYCAL_LOG_LEVEL", "INFO").upper(),
    )
