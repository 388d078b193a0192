from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Tuple

from .registry import EpochClock

LOGGER = logging.getLogger("waworker.timers")

TimerAction = Callable[[], Awaitable[None]]


class EpochTimers:
    """Delayed per-key actions that only run if their epoch is still current.

    A timer removes itself from the table before its action runs, so
    ``cancel_all`` issued from inside the action never cancels it.
    """

    def __init__(self, epochs: EpochClock) -> None:
        self._epochs = epochs
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    def schedule(
        self,
        key: str,
        name: str,
        epoch: int,
        delay: float,
        action: TimerAction,
    ) -> asyncio.Task:
        self.cancel(key, name)
        task = asyncio.ensure_future(self._fire(key, name, epoch, delay, action))
        self._tasks[(key, name)] = task
        LOGGER.debug(
            "stage=timer_scheduled key=%s timer=%s epoch=%s delay=%s", key, name, epoch, delay
        )
        return task

    async def _fire(
        self, key: str, name: str, epoch: int, delay: float, action: TimerAction
    ) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get((key, name)) is asyncio.current_task():
            self._tasks.pop((key, name), None)
        if not self._epochs.is_current(key, epoch):
            LOGGER.info(
                "stage=timer_stale key=%s timer=%s epoch=%s current=%s",
                key,
                name,
                epoch,
                self._epochs.current(key),
            )
            return
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=timer_failed key=%s timer=%s epoch=%s", key, name, epoch)

    def pending(self, key: str, name: str) -> bool:
        task = self._tasks.get((key, name))
        return task is not None and not task.done()

    def cancel(self, key: str, name: str) -> bool:
        task = self._tasks.pop((key, name), None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self, key: str) -> int:
        cancelled = 0
        for timer_key in [item for item in self._tasks if item[0] == key]:
            if self.cancel(*timer_key):
                cancelled += 1
        if cancelled:
            LOGGER.debug("stage=timers_cancelled key=%s count=%s", key, cancelled)
        return cancelled

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["EpochTimers", "TimerAction"]
