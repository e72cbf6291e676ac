"""Integration layer for external calendar providers."""

from .google_calendar import GoogleCalendarClient, OAuthToken

__all__ = [
    "GoogleCalendarClient",
    "OAuthToken",
]
