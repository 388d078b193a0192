from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_BY_STATE = Gauge(
    "waworker_sessions",
    "Number of sessions currently in each lifecycle state",
    labelnames=("state",),
)
PROVISIONING_ISSUED_TOTAL = Counter(
    "waworker_provisioning_issued_total",
    "Pairing payloads surfaced to observers",
)
PROVISIONING_TIMEOUT_TOTAL = Counter(
    "waworker_provisioning_timeout_total",
    "Pairing windows that elapsed without pairing",
)
DISCONNECTS_TOTAL = Counter(
    "waworker_disconnects_total",
    "Session closes grouped by disposition",
    labelnames=("disposition",),
)
RECONNECTS_SCHEDULED_TOTAL = Counter(
    "waworker_reconnects_scheduled_total",
    "Reconnection attempts scheduled after a retryable close",
)
DISPOSE_ERRORS_TOTAL = Counter(
    "waworker_dispose_errors_total",
    "Transport failures absorbed while disposing a session handle",
    labelnames=("step",),
)
WEBHOOK_ERRORS_TOTAL = Counter(
    "waworker_webhook_errors_total",
    "Inbound message deliveries that failed",
)

__all__ = [
    "SESSIONS_BY_STATE",
    "PROVISIONING_ISSUED_TOTAL",
    "PROVISIONING_TIMEOUT_TOTAL",
    "DISCONNECTS_TOTAL",
    "RECONNECTS_SCHEDULED_TOTAL",
    "DISPOSE_ERRORS_TOTAL",
    "WEBHOOK_ERRORS_TOTAL",
]
