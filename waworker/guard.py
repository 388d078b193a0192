from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

LOGGER = logging.getLogger("waworker.guard")

T = TypeVar("T")


class CreationGuard:
    """Runs at most one coroutine per key at a time for one kind of operation.

    Every caller that arrives while an operation is in flight awaits the same
    task and observes the same outcome. The task is shielded from its callers,
    so a cancelled caller never aborts the shared operation.
    """

    def __init__(self, operation: str = "creation") -> None:
        self._operation = operation
        self._inflight: Dict[str, asyncio.Task] = {}

    def get(self, key: str) -> Optional[asyncio.Task]:
        task = self._inflight.get(key)
        if task is not None and task.done():
            return None
        return task

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
            LOGGER.debug("stage=%s_start key=%s", self._operation, key)
        else:
            LOGGER.info("stage=%s_join key=%s", self._operation, key)
        return await asyncio.shield(task)

    async def wait(self, key: str) -> None:
        """Wait for the in-flight operation to settle, ignoring its outcome."""

        task = self.get(key)
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except Exception:
            LOGGER.debug(
                "stage=%s_wait_failed key=%s", self._operation, key, exc_info=True
            )

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug(
                "stage=%s_failed key=%s error=%s", self._operation, key, task.exception()
            )

    def cancel_all(self) -> None:
        for task in list(self._inflight.values()):
            if not task.done():
                task.cancel()
        self._inflight.clear()


__all__ = ["CreationGuard"]
