"""OAuth redirect handshake.

The state token travels through the provider's consent screen and back to
the callback. It is not stored anywhere: it carries the initiating user id, the
issue time in epoch milliseconds and a random nonce, JSON encoded and then
base64url encoded. A token older than the validity window is rejected.
Re-delivery of the same token is tolerated.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..errors import (
    AuthorizationFlowError,
    AuthorizationStateInvalid,
    ConfigurationError,
    ExternalAPIError,
)
from ..integrations.google_calendar import GoogleCalendarClient
from ..models import Credential
from ..storage import CredentialStore, InMemoryStore

logger = logging.getLogger(__name__)

STATE_MAX_AGE = timedelta(minutes=15)
# Tolerated clock drift for tokens stamped slightly in the future.
STATE_CLOCK_SKEW = timedelta(minutes=1)


@dataclass(frozen=True)
class AuthorizationState:
    user_id: str
    issued_at: datetime
    nonce: str

    def encode(self) -> str:
        payload = {
            "userId": self.user_id,
            "timestamp": int(self.issued_at.timestamp() * 1000),
            "nonce": self.nonce,
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "AuthorizationState":
        padded = token + "=" * (-len(token) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise AuthorizationStateInvalid("State token could not be decoded") from exc
        if not isinstance(payload, dict):
            raise AuthorizationStateInvalid("State token is not an object")
        user_id = payload.get("userId")
        if not user_id or not isinstance(user_id, str):
            raise AuthorizationStateInvalid("State token carries no user id")
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise AuthorizationStateInvalid("State token carries no issue time")
        try:
            issued_at = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise AuthorizationStateInvalid("State token issue time is out of range") from exc
        return cls(user_id=user_id, issued_at=issued_at, nonce=str(payload.get("nonce", "")))


class AuthorizationHandshake:
    """Builds the consent redirect and completes the callback."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        store: InMemoryStore,
        *,
        max_age: timedelta = STATE_MAX_AGE,
        clock: Callable[[], datetime] | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._credentials = CredentialStore(store)
        self._max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger

    def issue_state(self, user_id: str) -> AuthorizationState:
        return AuthorizationState(user_id=user_id, issued_at=self._clock(), nonce=secrets.token_hex(16))

    def begin_authorization(self, user_id: str) -> str:
        if not self._client.config.is_configured:
            self._logger.error("Google OAuth is missing client id, secret or redirect uri")
            raise ConfigurationError("Google OAuth not properly configured")
        state = self.issue_state(user_id)
        self._logger.info("Generating consent URL for user %s", user_id)
        return self._client.authorization_url(state.encode())

    def validate_state(self, token: str) -> AuthorizationState:
        state = AuthorizationState.decode(token)
        age = self._clock() - state.issued_at
        if age > self._max_age:
            raise AuthorizationStateInvalid(f"State token expired {age} ago")
        if age < -STATE_CLOCK_SKEW:
            raise AuthorizationStateInvalid("State token was issued in the future")
        return state

    def complete_authorization(self, code: str | None, state_token: str | None) -> Credential:
        """Exchange ``code`` for tokens and persist them for the user named by the state."""

        if not code:
            raise AuthorizationFlowError("missing_code", "Callback carried no authorization code")
        if not state_token:
            raise AuthorizationFlowError("missing_state", "Callback carried no state")

        state = self.validate_state(state_token)

        try:
            token = self._client.exchange_code(code)
        except ExternalAPIError as exc:
            raise AuthorizationFlowError("token_exchange", str(exc)) from exc

        if self._store.get_user(state.user_id) is None:
            raise AuthorizationFlowError("user_not_found", f"User {state.user_id} no longer exists")

        try:
            credential = self._credentials.upsert(state.user_id, token, now=self._clock())
        except Exception as exc:
            self._logger.exception("Failed to persist credential for user %s", state.user_id)
            raise AuthorizationFlowError("database_error", "Failed to persist credential") from exc

        if not credential.refresh_token:
            self._logger.warning("Provider issued no refresh token for user %s", state.user_id)
        self._logger.info("Stored calendar credential for user %s", state.user_id)
        return credential
