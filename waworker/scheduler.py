from __future__ import annotations

import logging
from typing import Dict, Optional

from .metrics import RECONNECTS_SCHEDULED_TOTAL
from .timers import EpochTimers, TimerAction

LOGGER = logging.getLogger("waworker.scheduler")

RECONNECT_TIMER = "reconnect"


class ReconnectScheduler:
    """Consecutive retryable-disconnect counters and the delayed re-create."""

    def __init__(self, timers: EpochTimers) -> None:
        self._timers = timers
        self._attempts: Dict[str, int] = {}

    def attempts(self, key: str) -> Optional[int]:
        return self._attempts.get(key)

    def set_attempts(self, key: str, value: Optional[int]) -> None:
        if value is None:
            self._attempts.pop(key, None)
        else:
            self._attempts[key] = value

    def clear(self, key: str) -> None:
        self._attempts.pop(key, None)

    def schedule(
        self, key: str, epoch: int, delay: float, attempt: int, action: TimerAction
    ) -> None:
        self._timers.schedule(key, RECONNECT_TIMER, epoch, delay, action)
        RECONNECTS_SCHEDULED_TOTAL.inc()
        LOGGER.info(
            "stage=reconnect_scheduled key=%s epoch=%s attempt=%s delay=%s",
            key,
            epoch,
            attempt,
            delay,
        )

    def has_pending(self, key: str) -> bool:
        return self._timers.pending(key, RECONNECT_TIMER)


__all__ = ["RECONNECT_TIMER", "ReconnectScheduler"]
