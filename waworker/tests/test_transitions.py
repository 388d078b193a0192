from __future__ import annotations

import pytest

from waworker.classifier import Disposition, classify, describe, is_unclassified
from waworker.registry import LifecycleState, SessionStatus
from waworker.transitions import (
    CancelProvisioningTimer,
    DisposeHandle,
    LifecyclePolicy,
    ProvisioningPhase,
    PublishProvisioningPayload,
    PurgeCredentials,
    RecordDisconnect,
    ScheduleReconnect,
    StartProvisioningTimer,
    on_connection_update,
    on_provisioning_expired,
)
from waworker.transport import CloseErrorKind, CloseReason, ConnectionPhase, ConnectionUpdate

POLICY = LifecyclePolicy(provisioning_timeout=30.0, reconnect_delay=2.0, max_reconnect_attempts=3)


def _status(state: LifecycleState = LifecycleState.CONNECTING, **changes) -> SessionStatus:
    status = SessionStatus.new("k", 1)
    if state != status.state:
        changes["state"] = state
    return status.evolve(**changes) if changes else status


def _close(code=None, kind=None) -> ConnectionUpdate:
    return ConnectionUpdate(
        phase=ConnectionPhase.CLOSE, close_reason=CloseReason(code=code, kind=kind)
    )


@pytest.mark.parametrize(
    "code, kind, expected",
    [
        (500, None, Disposition.FATAL_TERMINAL),
        (411, None, Disposition.FATAL_TERMINAL),
        (403, None, Disposition.FATAL_TERMINAL),
        (405, None, Disposition.FATAL_TERMINAL),
        (401, None, Disposition.CLEAN_TERMINAL),
        (440, None, Disposition.CLEAN_TERMINAL),
        (408, None, Disposition.RETRYABLE),
        (428, None, Disposition.RETRYABLE),
        (503, None, Disposition.RETRYABLE),
        (515, None, Disposition.RETRYABLE),
        (None, CloseErrorKind.STREAM_ERROR, Disposition.RETRYABLE),
        (None, CloseErrorKind.CREDENTIAL_INVALID, Disposition.FATAL_TERMINAL),
        (None, CloseErrorKind.LOGGED_OUT, Disposition.CLEAN_TERMINAL),
        (401, CloseErrorKind.STREAM_ERROR, Disposition.CLEAN_TERMINAL),
        (999, None, Disposition.CLEAN_TERMINAL),
        (None, None, Disposition.CLEAN_TERMINAL),
    ],
)
def test_classify(code, kind, expected):
    assert classify(code, kind) == expected


def test_classify_never_reports_provisioning_timeout():
    codes = [None, 0, 200, 401, 403, 405, 408, 411, 428, 440, 500, 503, 515, 999]
    kinds = [None, *CloseErrorKind]
    for code in codes:
        for kind in kinds:
            assert classify(code, kind) != Disposition.PROVISIONING_TIMEOUT


def test_unclassified_detection():
    assert is_unclassified(999, None)
    assert is_unclassified(None, CloseErrorKind.UNKNOWN)
    assert not is_unclassified(408, None)
    assert not is_unclassified(999, CloseErrorKind.CONNECTION_LOST)
    assert describe(None) == "connection closed"


def test_first_payload_publishes_and_starts_timer():
    result = on_connection_update(
        _status(),
        ProvisioningPhase.IDLE,
        ConnectionUpdate(provisioning_payload="qr"),
        attempts=None,
        policy=POLICY,
    )
    assert result.phase == ProvisioningPhase.PAYLOAD_ISSUED
    assert result.status.provisioning_payload == "qr"
    assert result.commands == (PublishProvisioningPayload("qr"), StartProvisioningTimer(30.0))


def test_repeated_payload_is_ignored():
    status = _status(provisioning_payload="qr")
    result = on_connection_update(
        status,
        ProvisioningPhase.PAYLOAD_ISSUED,
        ConnectionUpdate(provisioning_payload="qr-2"),
        attempts=None,
        policy=POLICY,
    )
    assert result.status == status
    assert result.commands == ()


def test_open_after_payload_pairs_and_resets_counter():
    status = _status(provisioning_payload="qr")
    result = on_connection_update(
        status,
        ProvisioningPhase.PAYLOAD_ISSUED,
        ConnectionUpdate(phase=ConnectionPhase.OPEN, identity="5511"),
        attempts=2,
        policy=POLICY,
    )
    assert result.status.state == LifecycleState.CONNECTED
    assert result.status.provisioning_payload is None
    assert result.status.identity == "5511"
    assert result.phase == ProvisioningPhase.PAIRED
    assert result.attempts == 0
    assert result.commands == (CancelProvisioningTimer(),)


def test_fatal_close_disposes_and_purges():
    result = on_connection_update(
        _status(LifecycleState.CONNECTED),
        ProvisioningPhase.PAIRED,
        _close(500),
        attempts=1,
        policy=POLICY,
    )
    assert result.status.state == LifecycleState.FATAL_ERROR
    assert result.attempts is None
    assert RecordDisconnect(Disposition.FATAL_TERMINAL, 500) in result.commands
    assert DisposeHandle(sign_out=False) in result.commands
    assert result.commands.count(PurgeCredentials()) == 1
    assert not any(isinstance(command, ScheduleReconnect) for command in result.commands)


def test_retryable_close_below_bound_schedules_reconnect():
    result = on_connection_update(
        _status(LifecycleState.CONNECTED),
        ProvisioningPhase.PAIRED,
        _close(428),
        attempts=1,
        policy=POLICY,
    )
    assert result.status.state == LifecycleState.DISCONNECTED
    assert result.attempts == 2
    assert ScheduleReconnect(2.0, 2) in result.commands
    assert PurgeCredentials() not in result.commands


def test_retryable_close_at_bound_is_fatal():
    result = on_connection_update(
        _status(),
        ProvisioningPhase.IDLE,
        _close(408),
        attempts=3,
        policy=POLICY,
    )
    assert result.status.state == LifecycleState.FATAL_ERROR
    assert result.status.last_error == "retries_exhausted: 3 reconnect attempts"
    assert result.attempts is None
    assert not any(isinstance(command, ScheduleReconnect) for command in result.commands)


def test_close_while_payload_issued_aborts_pairing():
    result = on_connection_update(
        _status(provisioning_payload="qr"),
        ProvisioningPhase.PAYLOAD_ISSUED,
        _close(401),
        attempts=None,
        policy=POLICY,
    )
    assert result.phase == ProvisioningPhase.ABORTED
    assert result.commands[0] == CancelProvisioningTimer()
    assert result.status.state == LifecycleState.LOGGED_OUT
    assert result.status.provisioning_payload is None


def test_events_after_terminal_state_are_ignored():
    status = _status(LifecycleState.FATAL_ERROR)
    result = on_connection_update(
        status,
        ProvisioningPhase.IDLE,
        ConnectionUpdate(phase=ConnectionPhase.OPEN),
        attempts=None,
        policy=POLICY,
    )
    assert result.status is status
    assert result.commands == ()


def test_provisioning_expiry_only_applies_while_issued():
    status = _status(provisioning_payload="qr")
    expired = on_provisioning_expired(status, ProvisioningPhase.PAYLOAD_ISSUED, attempts=None)
    assert expired.status.state == LifecycleState.PROVISIONING_TIMEOUT
    assert expired.status.last_error == "provisioning_expired"
    assert expired.phase == ProvisioningPhase.TIMED_OUT
    assert expired.commands == (
        RecordDisconnect(Disposition.PROVISIONING_TIMEOUT),
        DisposeHandle(sign_out=False),
    )

    paired = on_provisioning_expired(
        _status(LifecycleState.CONNECTED), ProvisioningPhase.PAIRED, attempts=0
    )
    assert paired.commands == ()
    assert paired.status.state == LifecycleState.CONNECTED
