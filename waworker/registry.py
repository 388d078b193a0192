from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class LifecycleState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PROVISIONING_TIMEOUT = "provisioning_timeout"
    FATAL_ERROR = "fatal_error"
    LOGGED_OUT = "logged_out"


ACTIVE_STATES = frozenset({LifecycleState.CONNECTING, LifecycleState.CONNECTED})


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """Observable state of one session key.

    Instances are immutable; every transition produces a new object so a
    status handed to a caller never changes underneath it.
    """

    key: str
    state: LifecycleState
    created_at: float
    last_transition_at: float
    epoch: int = 0
    provisioning_payload: Optional[str] = None
    identity: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def new(
        cls,
        key: str,
        epoch: int,
        *,
        previous: Optional["SessionStatus"] = None,
        last_error: Optional[str] = None,
    ) -> "SessionStatus":
        now = time.time()
        return cls(
            key=key,
            state=LifecycleState.CONNECTING,
            created_at=previous.created_at if previous is not None else now,
            last_transition_at=now,
            epoch=epoch,
            last_error=last_error,
        )

    def evolve(self, **changes: Any) -> "SessionStatus":
        if "state" in changes and changes["state"] != self.state:
            changes.setdefault("last_transition_at", time.time())
        return replace(self, **changes)

    def to_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "provisioning_payload": self.provisioning_payload,
            "identity": self.identity,
            "last_error": self.last_error,
            "created_at": int(self.created_at * 1000),
            "last_transition_at": int(self.last_transition_at * 1000),
            "epoch": self.epoch,
        }


class StatusRegistry:
    """Key -> status storage. No business logic lives here."""

    def __init__(self) -> None:
        self._statuses: Dict[str, SessionStatus] = {}

    def get(self, key: str) -> Optional[SessionStatus]:
        return self._statuses.get(key)

    def list(self) -> List[SessionStatus]:
        return list(self._statuses.values())

    def upsert(self, status: SessionStatus) -> SessionStatus:
        self._statuses[status.key] = status
        return status

    def remove(self, key: str) -> Optional[SessionStatus]:
        return self._statuses.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._statuses

    def __len__(self) -> int:
        return len(self._statuses)


class EpochClock:
    """Per-key epoch counter that only grows for the lifetime of the process."""

    def __init__(self) -> None:
        self._epochs: Dict[str, int] = {}

    def current(self, key: str) -> int:
        return self._epochs.get(key, 0)

    def advance(self, key: str) -> int:
        value = self._epochs.get(key, 0) + 1
        self._epochs[key] = value
        return value

    def is_current(self, key: str, epoch: int) -> bool:
        return self._epochs.get(key, 0) == epoch


__all__ = [
    "ACTIVE_STATES",
    "EpochClock",
    "LifecycleState",
    "SessionStatus",
    "StatusRegistry",
]
