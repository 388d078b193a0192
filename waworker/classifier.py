"""Mapping of transport close reasons to lifecycle dispositions."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from .errors import AccessDeniedError, CredentialInvalidError, SessionError
from .transport import CloseErrorKind


class Disposition(str, Enum):
    FATAL_TERMINAL = "fatal_terminal"
    CLEAN_TERMINAL = "clean_terminal"
    RETRYABLE = "retryable"
    # Only produced by the provisioning timer, never by classify().
    PROVISIONING_TIMEOUT = "provisioning_timeout"


LOGGED_OUT = 401
FORBIDDEN = 403
ACCESS_DENIED = 405
CONNECTION_LOST = 408
MULTIDEVICE_MISMATCH = 411
CONNECTION_CLOSED = 428
CONNECTION_REPLACED = 440
BAD_SESSION = 500
UNAVAILABLE_SERVICE = 503
RESTART_REQUIRED = 515

CREDENTIAL_INVALID_CODES = frozenset({BAD_SESSION, MULTIDEVICE_MISMATCH})
ACCESS_DENIED_CODES = frozenset({FORBIDDEN, ACCESS_DENIED})
FATAL_CODES = CREDENTIAL_INVALID_CODES | ACCESS_DENIED_CODES
CLEAN_CODES = frozenset({LOGGED_OUT, CONNECTION_REPLACED})
RETRYABLE_CODES = frozenset(
    {CONNECTION_LOST, CONNECTION_CLOSED, UNAVAILABLE_SERVICE, RESTART_REQUIRED}
)

FATAL_KINDS = frozenset({CloseErrorKind.CREDENTIAL_INVALID, CloseErrorKind.ACCESS_DENIED})
CLEAN_KINDS = frozenset({CloseErrorKind.LOGGED_OUT})
RETRYABLE_KINDS = frozenset(
    {
        CloseErrorKind.STREAM_ERROR,
        CloseErrorKind.CONNECTION_LOST,
        CloseErrorKind.RESTART_REQUIRED,
    }
)


def classify(code: Optional[int], kind: Optional[CloseErrorKind] = None) -> Disposition:
    """Return the disposition for a close event.

    The numeric code wins over the error kind when both are known. Anything not
    on an explicit list is treated as a clean terminal close so an unknown code
    can never loop through reconnection.
    """

    if code is not None:
        if code in FATAL_CODES:
            return Disposition.FATAL_TERMINAL
        if code in CLEAN_CODES:
            return Disposition.CLEAN_TERMINAL
        if code in RETRYABLE_CODES:
            return Disposition.RETRYABLE
    if kind is not None:
        if kind in FATAL_KINDS:
            return Disposition.FATAL_TERMINAL
        if kind in CLEAN_KINDS:
            return Disposition.CLEAN_TERMINAL
        if kind in RETRYABLE_KINDS:
            return Disposition.RETRYABLE
    return Disposition.CLEAN_TERMINAL


def is_unclassified(code: Optional[int], kind: Optional[CloseErrorKind] = None) -> bool:
    known_code = code is not None and code in (FATAL_CODES | CLEAN_CODES | RETRYABLE_CODES)
    known_kind = kind is not None and kind in (FATAL_KINDS | CLEAN_KINDS | RETRYABLE_KINDS)
    return not known_code and not known_kind


def fatal_error(
    key: str, code: Optional[int], kind: Optional[CloseErrorKind] = None
) -> SessionError:
    """Build the error recorded for a fatal close."""

    if code in ACCESS_DENIED_CODES or (
        code not in CREDENTIAL_INVALID_CODES and kind == CloseErrorKind.ACCESS_DENIED
    ):
        return AccessDeniedError(key, f"close code {code}")
    return CredentialInvalidError(key, f"close code {code}")


def describe(code: Optional[int], kind: Optional[CloseErrorKind] = None, message: Optional[str] = None) -> str:
    parts = []
    if code is not None:
        parts.append(f"code={code}")
    if kind is not None:
        parts.append(f"kind={kind.value}")
    if message:
        parts.append(message)
    return " ".join(parts) or "connection closed"


__all__ = [
    "Disposition",
    "classify",
    "describe",
    "fatal_error",
    "is_unclassified",
]
