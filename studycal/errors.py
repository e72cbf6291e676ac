"""Error taxonomy shared by the synchronization engine and the API layer."""

from __future__ import annotations


class StudyCalError(Exception):
    """Base error for the study calendar service."""


class AuthenticationRequired(StudyCalError):
    """Raised when the request carries no valid local session."""


class AuthorizationDenied(StudyCalError):
    """Raised when the caller lacks the role required for an action."""


class NotFound(StudyCalError):
    """Raised when a referenced local record does not exist."""


class ValidationError(StudyCalError):
    """Raised for malformed request payloads, before any local mutation."""


class ConfigurationError(StudyCalError):
    """Raised when the provider integration is not configured."""


class CredentialAbsent(StudyCalError):
    """Raised where a missing provider connection has to be reported to the caller."""


class AuthorizationFlowError(StudyCalError):
    """Raised when the OAuth redirect handshake fails.

    ``kind`` is a short machine readable code that is safe to put into the
    redirect back to the profile page.
    """

    def __init__(self, kind: str, message: str | None = None) -> None:
        super().__init__(message or kind)
        self.kind = kind


class AuthorizationStateInvalid(AuthorizationFlowError):
    """Raised when the handshake state is malformed or older than the validity window."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__("invalid_state", message)


class TokenRefreshFailure(StudyCalError):
    """Raised when the provider rejects a refresh of an expired access token."""

    def __init__(self, user_id: str, message: str, *, revoked: bool = False) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.revoked = revoked


class ExternalAPIError(StudyCalError):
    """Raised when a call against the calendar provider fails."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.error_code = error_code
