from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for lifecycle errors surfaced by the session manager."""

    code = "session_error"

    def __init__(self, key: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.key = key
        self.detail = detail
        message = self.code if not detail else f"{self.code}: {detail}"
        super().__init__(message)


class AlreadyExistsError(SessionError):
    """Raised when a fresh create targets a key whose handle is still live."""

    code = "already_exists"


class NotFoundError(SessionError):
    """Raised when an operation targets an unknown key."""

    code = "not_found"


class NotConnectedError(SessionError):
    """Raised when a send is attempted before the session reached connected."""

    code = "not_connected"


class HandleAlreadyLiveError(SessionError):
    """Raised when a handle is installed over one that is not being disposed."""

    code = "handle_already_live"


class ProvisioningExpiredError(SessionError):
    """Raised when the pairing payload window elapsed without pairing."""

    code = "provisioning_expired"


class RetriesExhaustedError(SessionError):
    code = "retries_exhausted"

    def __init__(self, key: Optional[str] = None, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(key, f"{attempts} reconnect attempts")


class CredentialInvalidError(SessionError):
    code = "credential_invalid"


class AccessDeniedError(SessionError):
    code = "access_denied"


__all__ = [
    "SessionError",
    "AlreadyExistsError",
    "NotFoundError",
    "NotConnectedError",
    "HandleAlreadyLiveError",
    "ProvisioningExpiredError",
    "RetriesExhaustedError",
    "CredentialInvalidError",
    "AccessDeniedError",
]
