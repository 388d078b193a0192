from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import HandleAlreadyLiveError
from .metrics import DISPOSE_ERRORS_TOTAL
from .transport import SessionHandle

LOGGER = logging.getLogger("waworker.handles")


@dataclass(slots=True)
class OwnedHandle:
    key: str
    handle: SessionHandle
    epoch: int
    consumer: Optional[asyncio.Task] = None
    closing: bool = False


class HandleOwner:
    """Exclusive owner of the transport handle of every key."""

    def __init__(self) -> None:
        self._entries: Dict[str, OwnedHandle] = {}

    def get(self, key: str) -> Optional[OwnedHandle]:
        return self._entries.get(key)

    def handle(self, key: str) -> Optional[SessionHandle]:
        entry = self._entries.get(key)
        return entry.handle if entry is not None else None

    def is_live(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.closing

    def owns(self, key: str, handle: SessionHandle) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.handle is handle and not entry.closing

    def keys(self) -> List[str]:
        return list(self._entries)

    def install(self, key: str, handle: SessionHandle, epoch: int) -> OwnedHandle:
        existing = self._entries.get(key)
        if existing is not None and not existing.closing:
            raise HandleAlreadyLiveError(key, f"epoch {existing.epoch} still owns the handle")
        entry = OwnedHandle(key=key, handle=handle, epoch=epoch)
        self._entries[key] = entry
        LOGGER.info("stage=handle_installed key=%s epoch=%s", key, epoch)
        return entry

    def attach_consumer(self, key: str, handle: SessionHandle, task: asyncio.Task) -> None:
        entry = self._entries.get(key)
        if entry is None or entry.handle is not handle:
            task.cancel()
            return
        entry.consumer = task

    async def dispose(self, key: str, *, sign_out: bool = True) -> bool:
        """Release the handle of ``key``.

        Sign-out and termination failures are logged and counted, never
        raised. The entry leaves the ownership table on every exit path.
        """

        entry = self._entries.get(key)
        if entry is None or entry.closing:
            return False
        entry.closing = True
        try:
            consumer = entry.consumer
            if (
                consumer is not None
                and not consumer.done()
                and consumer is not asyncio.current_task()
            ):
                consumer.cancel()
            if sign_out:
                try:
                    await entry.handle.logout()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    DISPOSE_ERRORS_TOTAL.labels("logout").inc()
                    LOGGER.warning(
                        "stage=handle_logout_failed key=%s epoch=%s error=%s",
                        key,
                        entry.epoch,
                        exc,
                    )
            try:
                await entry.handle.end()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                DISPOSE_ERRORS_TOTAL.labels("end").inc()
                LOGGER.warning(
                    "stage=handle_end_failed key=%s epoch=%s error=%s",
                    key,
                    entry.epoch,
                    exc,
                )
        finally:
            if self._entries.get(key) is entry:
                self._entries.pop(key, None)
        LOGGER.info(
            "stage=handle_disposed key=%s epoch=%s sign_out=%s", key, entry.epoch, sign_out
        )
        return True


__all__ = ["HandleOwner", "OwnedHandle"]
