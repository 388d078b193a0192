"""Pure lifecycle state transitions.

Every function here takes the current :class:`SessionStatus`, the epoch's
provisioning phase and the reconnect counter, and returns a :class:`Transition`
describing the next status plus the side effects the manager must run. Nothing
in this module touches handles, timers or storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from .classifier import Disposition, classify, describe, fatal_error, is_unclassified
from .errors import ProvisioningExpiredError, RetriesExhaustedError
from .registry import ACTIVE_STATES, LifecycleState, SessionStatus
from .transport import ConnectionPhase, ConnectionUpdate


@dataclass(frozen=True, slots=True)
class LifecyclePolicy:
    provisioning_timeout: float = 300.0
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 3
    settle_delay: float = 0.5


class ProvisioningPhase(str, Enum):
    IDLE = "idle"
    PAYLOAD_ISSUED = "payload_issued"
    PAIRED = "paired"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class PublishProvisioningPayload:
    payload: str


@dataclass(frozen=True, slots=True)
class StartProvisioningTimer:
    timeout: float


@dataclass(frozen=True, slots=True)
class CancelProvisioningTimer:
    pass


@dataclass(frozen=True, slots=True)
class DisposeHandle:
    sign_out: bool = False


@dataclass(frozen=True, slots=True)
class PurgeCredentials:
    pass


@dataclass(frozen=True, slots=True)
class ScheduleReconnect:
    delay: float
    attempt: int


@dataclass(frozen=True, slots=True)
class RecordDisconnect:
    disposition: Disposition
    code: Optional[int] = None


Command = Union[
    PublishProvisioningPayload,
    StartProvisioningTimer,
    CancelProvisioningTimer,
    DisposeHandle,
    PurgeCredentials,
    ScheduleReconnect,
    RecordDisconnect,
]


@dataclass(frozen=True, slots=True)
class Transition:
    status: SessionStatus
    phase: ProvisioningPhase
    # New reconnect counter value; ``None`` deletes the counter.
    attempts: Optional[int]
    commands: Tuple[Command, ...] = field(default_factory=tuple)


def _noop(status: SessionStatus, phase: ProvisioningPhase, attempts: Optional[int]) -> Transition:
    return Transition(status=status, phase=phase, attempts=attempts)


def on_connection_update(
    status: SessionStatus,
    phase: ProvisioningPhase,
    update: ConnectionUpdate,
    *,
    attempts: Optional[int],
    policy: LifecyclePolicy,
) -> Transition:
    if status.state not in ACTIVE_STATES:
        return _noop(status, phase, attempts)

    commands: list[Command] = []

    if update.provisioning_payload and status.state == LifecycleState.CONNECTING:
        if phase == ProvisioningPhase.IDLE:
            phase = ProvisioningPhase.PAYLOAD_ISSUED
            status = status.evolve(provisioning_payload=update.provisioning_payload)
            commands.append(PublishProvisioningPayload(update.provisioning_payload))
            commands.append(StartProvisioningTimer(policy.provisioning_timeout))

    if update.phase == ConnectionPhase.OPEN:
        if phase == ProvisioningPhase.PAYLOAD_ISSUED:
            phase = ProvisioningPhase.PAIRED
            commands.append(CancelProvisioningTimer())
        status = status.evolve(
            state=LifecycleState.CONNECTED,
            provisioning_payload=None,
            identity=update.identity or status.identity,
            last_error=None,
        )
        return Transition(status=status, phase=phase, attempts=0, commands=tuple(commands))

    if update.phase == ConnectionPhase.CLOSE:
        if phase == ProvisioningPhase.PAYLOAD_ISSUED:
            phase = ProvisioningPhase.ABORTED
            commands.append(CancelProvisioningTimer())
        return _on_close(status, phase, update, attempts=attempts, policy=policy, commands=commands)

    return Transition(status=status, phase=phase, attempts=attempts, commands=tuple(commands))


def _on_close(
    status: SessionStatus,
    phase: ProvisioningPhase,
    update: ConnectionUpdate,
    *,
    attempts: Optional[int],
    policy: LifecyclePolicy,
    commands: list[Command],
) -> Transition:
    reason = update.close_reason
    code = reason.code if reason else None
    kind = reason.kind if reason else None
    message = reason.message if reason else None
    disposition = classify(code, kind)
    commands.append(RecordDisconnect(disposition, code))

    if disposition == Disposition.FATAL_TERMINAL:
        error = fatal_error(status.key, code, kind)
        commands.extend([DisposeHandle(sign_out=False), PurgeCredentials()])
        status = status.evolve(
            state=LifecycleState.FATAL_ERROR,
            provisioning_payload=None,
            last_error=str(error),
        )
        return Transition(status=status, phase=phase, attempts=None, commands=tuple(commands))

    if disposition == Disposition.RETRYABLE:
        current = attempts or 0
        # bound counts reconnects already scheduled, so the (bound+1)-th close is fatal
        if current >= policy.max_reconnect_attempts:
            error = RetriesExhaustedError(status.key, current)
            commands.append(DisposeHandle(sign_out=False))
            status = status.evolve(
                state=LifecycleState.FATAL_ERROR,
                provisioning_payload=None,
                last_error=str(error),
            )
            return Transition(status=status, phase=phase, attempts=None, commands=tuple(commands))
        attempt = current + 1
        commands.append(DisposeHandle(sign_out=False))
        commands.append(ScheduleReconnect(policy.reconnect_delay, attempt))
        status = status.evolve(
            state=LifecycleState.DISCONNECTED,
            provisioning_payload=None,
            last_error=describe(code, kind, message),
        )
        return Transition(status=status, phase=phase, attempts=attempt, commands=tuple(commands))

    last_error = None
    if is_unclassified(code, kind):
        last_error = f"unclassified close: {describe(code, kind, message)}"
    commands.append(DisposeHandle(sign_out=False))
    status = status.evolve(
        state=LifecycleState.LOGGED_OUT,
        provisioning_payload=None,
        last_error=last_error,
    )
    return Transition(status=status, phase=phase, attempts=None, commands=tuple(commands))


def on_provisioning_expired(
    status: SessionStatus,
    phase: ProvisioningPhase,
    *,
    attempts: Optional[int],
) -> Transition:
    if phase != ProvisioningPhase.PAYLOAD_ISSUED or status.state != LifecycleState.CONNECTING:
        return _noop(status, phase, attempts)
    error = ProvisioningExpiredError(status.key)
    status = status.evolve(
        state=LifecycleState.PROVISIONING_TIMEOUT,
        provisioning_payload=None,
        last_error=str(error),
    )
    commands: Sequence[Command] = (
        RecordDisconnect(Disposition.PROVISIONING_TIMEOUT),
        DisposeHandle(sign_out=False),
    )
    return Transition(
        status=status,
        phase=ProvisioningPhase.TIMED_OUT,
        attempts=None,
        commands=tuple(commands),
    )


__all__ = [
    "CancelProvisioningTimer",
    "Command",
    "DisposeHandle",
    "LifecyclePolicy",
    "ProvisioningPhase",
    "PublishProvisioningPayload",
    "PurgeCredentials",
    "RecordDisconnect",
    "ScheduleReconnect",
    "StartProvisioningTimer",
    "Transition",
    "on_connection_update",
    "on_provisioning_expired",
]
