"""Calendar synchronization and credential lifecycle engine."""

from .attendees import AttendeePropagator
from .credentials import CredentialManager
from .events import EventSynchronizer, build_event_body
from .handshake import AuthorizationHandshake, AuthorizationState
from .responses import ResponseSync, to_provider_response

__all__ = [
    "AttendeePropagator",
    "AuthorizationHandshake",
    "AuthorizationState",
    "CredentialManager",
    "EventSynchronizer",
    "ResponseSync",
    "build_event_body",
    "to_provider_response",
]
