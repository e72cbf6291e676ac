from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from ..errors import ExternalAPIError, TokenRefreshFailure
from ..integrations.google_calendar import GoogleCalendarClient
from ..models import Credential
from ..storage import CredentialStore

logger = logging.getLogger(__name__)

# Returned by the token endpoint when consent was revoked or the refresh token expired.
REVOKED_ERROR_CODE = "invalid_grant"

# Users hash onto a fixed pool of refresh locks.
LOCK_STRIPES = 64


class CredentialManager:
    """Hands out usable access tokens, refreshing expired ones inline.

    Refreshes are serialized per user through a fixed pool of striped locks
    (unrelated users may share one). A caller that waited for another
    request's refresh re-reads the stored credential and reuses the new token,
    so providers that rotate refresh tokens never see a stale one.
    """

    def __init__(
        self,
        client: GoogleCalendarClient,
        credentials: CredentialStore,
        *,
        clock: Callable[[], datetime] | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def is_connected(self, user_id: str) -> bool:
        return self._credentials.get(user_id) is not None

    def obtain_usable_credential(self, user_id: str) -> Credential | None:
        """Return a non-expired credential, ``None`` when the user is not connected.

        Raises :class:`TokenRefreshFailure` when an expired token cannot be refreshed.
        """

        credential = self._credentials.get(user_id)
        if credential is None:
            return None
        if not credential.is_expired(now=self._clock()):
            return credential

        with self._lock_for(user_id):
            credential = self._credentials.get(user_id)
            if credential is None:
                return None
            if not credential.is_expired(now=self._clock()):
                self._logger.debug("Credential for user %s was refreshed concurrently", user_id)
                return credential
            return self._refresh(credential)

    def disconnect(self, user_id: str) -> bool:
        removed = self._credentials.delete(user_id)
        if removed:
            self._logger.info("Removed calendar credential for user %s", user_id)
        return removed

    def _refresh(self, credential: Credential) -> Credential:
        user_id = credential.user_id
        if not credential.refresh_token:
            self._logger.warning("Credential for user %s expired and has no refresh token", user_id)
            raise TokenRefreshFailure(user_id, "No refresh token available")

        self._logger.info("Refreshing access token for user %s", user_id)
        try:
            token = self._client.refresh_access_token(credential.refresh_token)
        except ExternalAPIError as exc:
            revoked = exc.error_code == REVOKED_ERROR_CODE
            if revoked:
                self._logger.warning("Refresh token for user %s was revoked, disconnecting", user_id)
                self._credentials.delete(user_id)
            else:
                self._logger.warning("Token refresh for user %s failed: %s", user_id, exc)
            raise TokenRefreshFailure(user_id, "Failed to refresh access token", revoked=revoked) from exc

        refreshed = replace(
            credential,
            access_token=token.access_token,
            refresh_token=token.refresh_token or credential.refresh_token,
            expires_at=token.expiry_or_default(now=self._clock()),
        )
        self._credentials.save(refreshed)
        self._logger.info("Token refreshed for user %s, expires at %s", user_id, refreshed.expires_at)
        return refreshed

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._locks[hash(user_id) % len(self._locks)]
