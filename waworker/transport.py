"""Contract between the lifecycle manager and the external protocol client."""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Sequence, Union


class ConnectionPhase(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class CloseErrorKind(str, Enum):
    """Transport-neutral description of why a connection closed."""

    STREAM_ERROR = "stream_error"
    CONNECTION_LOST = "connection_lost"
    RESTART_REQUIRED = "restart_required"
    LOGGED_OUT = "logged_out"
    CREDENTIAL_INVALID = "credential_invalid"
    ACCESS_DENIED = "access_denied"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class CloseReason:
    code: Optional[int] = None
    kind: Optional[CloseErrorKind] = None
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CredentialUpdate:
    payload: Any


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    phase: Optional[ConnectionPhase] = None
    provisioning_payload: Optional[str] = None
    close_reason: Optional[CloseReason] = None
    identity: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MessageBatch:
    messages: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    kind: str = "notify"


TransportEvent = Union[CredentialUpdate, ConnectionUpdate, MessageBatch]


class SessionHandle(Protocol):
    def events(self) -> AsyncIterator[TransportEvent]:
        ...

    async def logout(self) -> None:
        ...

    async def end(self) -> None:
        ...

    async def send(self, jid: str, content: Mapping[str, Any]) -> Any:
        ...


class TransportClient(Protocol):
    async def create_handle(self, key: str, credentials: Any) -> SessionHandle:
        ...


def load_transport(reference: str) -> TransportClient:
    """Instantiate a transport client from a ``module:attr`` reference.

    ``attr`` may be a class or a zero-argument factory.
    """

    if not reference or ":" not in reference:
        raise RuntimeError("transport_not_configured")
    module_path, attr = reference.split(":", 1)
    module = importlib.import_module(module_path)
    factory = getattr(module, attr)
    return factory()


__all__ = [
    "CloseErrorKind",
    "CloseReason",
    "ConnectionPhase",
    "ConnectionUpdate",
    "CredentialUpdate",
    "MessageBatch",
    "SessionHandle",
    "TransportClient",
    "TransportEvent",
    "load_transport",
]
