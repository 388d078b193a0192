from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .classifier import Disposition
from .content import decode_base64, media_content, text_content
from .credentials import CredentialStore
from .delivery import DeliverySink
from .errors import (
    AlreadyExistsError,
    NotConnectedError,
    NotFoundError,
    ProvisioningExpiredError,
)
from .guard import CreationGuard
from .handles import HandleOwner
from .metrics import (
    DISCONNECTS_TOTAL,
    PROVISIONING_ISSUED_TOTAL,
    PROVISIONING_TIMEOUT_TOTAL,
    SESSIONS_BY_STATE,
)
from .phone import identity_from_jid, to_jid
from .provisioning import ProvisioningTracker, build_qr_png
from .registry import (
    ACTIVE_STATES,
    EpochClock,
    LifecycleState,
    SessionStatus,
    StatusRegistry,
)
from .scheduler import ReconnectScheduler
from .timers import EpochTimers
from .transitions import (
    CancelProvisioningTimer,
    Command,
    DisposeHandle,
    LifecyclePolicy,
    PublishProvisioningPayload,
    PurgeCredentials,
    RecordDisconnect,
    ScheduleReconnect,
    StartProvisioningTimer,
    Transition,
    on_connection_update,
    on_provisioning_expired,
)
from .transport import (
    CloseErrorKind,
    CloseReason,
    ConnectionPhase,
    ConnectionUpdate,
    CredentialUpdate,
    MessageBatch,
    SessionHandle,
    TransportClient,
    TransportEvent,
)


LOGGER = logging.getLogger("waworker")

ProvisioningListener = Callable[[str, str], Any]


class SessionLifecycleManager:
    """Create, observe and tear down transport sessions keyed by caller ids.

    Each key moves through epochs. An epoch starts with a create, owns at most
    one transport handle and one event consumer, and ends when the handle is
    disposed. Timers and consumers of an old epoch never touch a newer one.
    """

    def __init__(
        self,
        transport: TransportClient,
        credentials: CredentialStore,
        *,
        policy: Optional[LifecyclePolicy] = None,
        delivery: Optional[DeliverySink] = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._policy = policy or LifecyclePolicy()
        self._delivery = delivery
        self._registry = StatusRegistry()
        self._epochs = EpochClock()
        self._guard = CreationGuard()
        self._removals = CreationGuard("removal")
        self._handles = HandleOwner()
        self._timers = EpochTimers(self._epochs)
        self._provisioning = ProvisioningTracker(self._timers)
        self._scheduler = ReconnectScheduler(self._timers)
        self._listeners: List[ProvisioningListener] = []
        self._png_cache: Dict[str, Tuple[str, bytes]] = {}
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self._bootstrap_existing_sessions()

    async def _bootstrap_existing_sessions(self) -> None:
        for key in self._credentials.keys():
            try:
                await self.create(key, reconnection=True)
                LOGGER.info("stage=bootstrap key=%s", key)
            except Exception as exc:
                LOGGER.exception("stage=bootstrap_failed key=%s error=%s", key, exc)
        self._update_metrics()

    async def shutdown(self) -> None:
        self._guard.cancel_all()
        self._removals.cancel_all()
        await self._timers.shutdown()
        for key in self._handles.keys():
            await self._handles.dispose(key, sign_out=False)
        aclose = getattr(self._delivery, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
        self._started = False
        self._update_metrics()

    # -- public queries -------------------------------------------------

    def status(self, key: str) -> SessionStatus:
        status = self._registry.get(key)
        if status is None:
            raise NotFoundError(key)
        return status

    def list_all(self) -> List[SessionStatus]:
        return self._registry.list()

    def reconnect_attempts(self, key: str) -> Optional[int]:
        return self._scheduler.attempts(key)

    def has_pending_reconnect(self, key: str) -> bool:
        return self._scheduler.has_pending(key)

    def provisioning_payload(self, key: str) -> str:
        status = self.status(key)
        if status.state == LifecycleState.PROVISIONING_TIMEOUT:
            raise ProvisioningExpiredError(key)
        if not status.provisioning_payload:
            raise NotFoundError(key, "no provisioning payload")
        return status.provisioning_payload

    def provisioning_png(self, key: str) -> bytes:
        payload = self.provisioning_payload(key)
        cached = self._png_cache.get(key)
        if cached is not None and cached[0] == payload:
            return cached[1]
        png = build_qr_png(payload)
        self._png_cache[key] = (payload, png)
        return png

    def add_provisioning_listener(self, listener: ProvisioningListener) -> Callable[[], None]:
        """Register ``listener(key, payload)``; returns a function that unregisters it."""

        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in LifecycleState}
        for status in self._registry.list():
            counts[status.state.value] += 1
        return counts

    # -- creation -------------------------------------------------------

    async def create(self, key: str, *, reconnection: bool = False) -> SessionStatus:
        await self._removals.wait(key)
        if self._guard.get(key) is None and not reconnection:
            current = self._registry.get(key)
            if current is not None and current.state in ACTIVE_STATES:
                return current
            if self._handles.is_live(key):
                raise AlreadyExistsError(key)
        return await self._guard.run(key, functools.partial(self._create, key, reconnection))

    async def _create(self, key: str, reconnection: bool) -> SessionStatus:
        if self._policy.settle_delay > 0:
            await asyncio.sleep(self._policy.settle_delay)
        previous = self._registry.get(key)

        if reconnection:
            if self._handles.is_live(key):
                if previous is not None and previous.state == LifecycleState.CONNECTING:
                    LOGGER.info(
                        "stage=reconnect_skipped key=%s epoch=%s reason=pairing_in_progress",
                        key,
                        previous.epoch,
                    )
                    return previous
                await self._handles.dispose(key, sign_out=False)
        else:
            self._timers.cancel_all(key)
            self._scheduler.clear(key)
            if self._credentials.exists(key):
                LOGGER.warning("stage=stale_credentials_purged key=%s", key)
                self._credentials.purge(key)

        epoch = self._epochs.advance(key)
        self._timers.cancel_all(key)
        self._provisioning.begin(key, epoch)
        self._png_cache.pop(key, None)

        stored = self._credentials.open(key)
        handle = await self._transport.create_handle(key, stored)
        try:
            self._handles.install(key, handle, epoch)
        except Exception:
            with contextlib.suppress(Exception):
                await handle.end()
            raise

        last_error = previous.last_error if reconnection and previous is not None else None
        status = SessionStatus.new(key, epoch, previous=previous, last_error=last_error)
        self._set_status(status, reason="reconnect" if reconnection else "create")
        consumer = asyncio.ensure_future(self._consume(key, handle, epoch))
        self._handles.attach_consumer(key, handle, consumer)
        LOGGER.info(
            "stage=session_created key=%s epoch=%s reconnection=%s",
            key,
            epoch,
            "true" if reconnection else "false",
        )
        return status

    # -- removal --------------------------------------------------------

    async def remove(self, key: str) -> bool:
        return await self._removals.run(key, functools.partial(self._remove, key))

    async def _remove(self, key: str) -> bool:
        await self._guard.wait(key)
        if key not in self._registry and self._handles.get(key) is None:
            return False
        self._epochs.advance(key)
        self._timers.cancel_all(key)
        self._provisioning.forget(key)
        self._scheduler.clear(key)
        self._png_cache.pop(key, None)
        await self._handles.dispose(key, sign_out=True)
        self._purge_credentials(key)
        previous = self._registry.remove(key)
        LOGGER.info(
            "stage=session_removed key=%s last_state=%s",
            key,
            previous.state.value if previous is not None else None,
        )
        self._update_metrics()
        return True

    # -- sending --------------------------------------------------------

    def _require_connected(self, key: str) -> SessionHandle:
        status = self.status(key)
        handle = self._handles.handle(key)
        live = handle is not None and self._handles.is_live(key)
        if status.state != LifecycleState.CONNECTED or not live:
            raise NotConnectedError(key, status.state.value)
        return handle

    async def send_text(self, key: str, to: str, text: str) -> str:
        handle = self._require_connected(key)
        jid = to_jid(to)
        await handle.send(jid, text_content(text))
        LOGGER.info("stage=message_sent key=%s jid=%s kind=text", key, jid)
        return jid

    async def send_media(
        self,
        key: str,
        to: str,
        media_type: str,
        *,
        url: Optional[str] = None,
        data: Optional[str] = None,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> str:
        """Send media given either by ``url`` or as base64 ``data``."""

        handle = self._require_connected(key)
        jid = to_jid(to)
        source = decode_base64(data) if data is not None else (url or "")
        content = media_content(media_type, source, caption=caption, file_name=file_name)
        await handle.send(jid, content)
        LOGGER.info("stage=message_sent key=%s jid=%s kind=%s", key, jid, media_type)
        return jid

    # -- event handling -------------------------------------------------

    async def _consume(self, key: str, handle: SessionHandle, epoch: int) -> None:
        try:
            async for event in handle.events():
                if not self._is_owner(key, handle, epoch):
                    break
                await self._handle_event(key, epoch, event)
                if not self._is_owner(key, handle, epoch):
                    break
            else:
                if self._is_owner(key, handle, epoch):
                    LOGGER.warning("stage=event_stream_ended key=%s epoch=%s", key, epoch)
                    await self._apply_connection_update(
                        key,
                        epoch,
                        ConnectionUpdate(
                            phase=ConnectionPhase.CLOSE,
                            close_reason=CloseReason(
                                kind=CloseErrorKind.CONNECTION_LOST,
                                message="event stream ended",
                            ),
                        ),
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=consumer_failed key=%s epoch=%s", key, epoch)
            if self._is_owner(key, handle, epoch):
                await self._apply_connection_update(
                    key,
                    epoch,
                    ConnectionUpdate(
                        phase=ConnectionPhase.CLOSE,
                        close_reason=CloseReason(
                            kind=CloseErrorKind.CONNECTION_LOST, message=str(exc)
                        ),
                    ),
                )

    def _is_owner(self, key: str, handle: SessionHandle, epoch: int) -> bool:
        return self._handles.owns(key, handle) and self._epochs.is_current(key, epoch)

    async def _handle_event(self, key: str, epoch: int, event: TransportEvent) -> None:
        if isinstance(event, CredentialUpdate):
            try:
                self._credentials.save(key, event.payload)
            except (OSError, ValueError, TypeError) as exc:
                LOGGER.error("stage=credentials_save_failed key=%s error=%s", key, exc)
        elif isinstance(event, ConnectionUpdate):
            await self._apply_connection_update(key, epoch, event)
        elif isinstance(event, MessageBatch):
            if self._delivery is None:
                return
            try:
                await self._delivery(key, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("stage=delivery_failed key=%s", key)
        else:
            LOGGER.warning("stage=unknown_event key=%s type=%s", key, type(event).__name__)

    async def _apply_connection_update(
        self, key: str, epoch: int, update: ConnectionUpdate
    ) -> None:
        status = self._registry.get(key)
        if status is None or status.epoch != epoch:
            return
        if update.identity:
            update = ConnectionUpdate(
                phase=update.phase,
                provisioning_payload=update.provisioning_payload,
                close_reason=update.close_reason,
                identity=identity_from_jid(update.identity),
            )
        transition = on_connection_update(
            status,
            self._provisioning.phase(key, epoch),
            update,
            attempts=self._scheduler.attempts(key),
            policy=self._policy,
        )
        reason = update.phase.value if update.phase is not None else None
        await self._apply(key, epoch, status, transition, reason=reason)

    async def _provisioning_expired(self, key: str, epoch: int) -> None:
        status = self._registry.get(key)
        if status is None or status.epoch != epoch:
            return
        transition = on_provisioning_expired(
            status,
            self._provisioning.phase(key, epoch),
            attempts=self._scheduler.attempts(key),
        )
        await self._apply(key, epoch, status, transition, reason="provisioning_expired")

    async def _apply(
        self,
        key: str,
        epoch: int,
        current: SessionStatus,
        transition: Transition,
        *,
        reason: Optional[str] = None,
    ) -> None:
        self._provisioning.set_phase(key, epoch, transition.phase)
        self._scheduler.set_attempts(key, transition.attempts)
        if transition.status != current:
            self._set_status(transition.status, reason=reason)
        for command in transition.commands:
            await self._execute(key, epoch, command)

    async def _execute(self, key: str, epoch: int, command: Command) -> None:
        if isinstance(command, PublishProvisioningPayload):
            PROVISIONING_ISSUED_TOTAL.inc()
            LOGGER.info("stage=provisioning_issued key=%s epoch=%s", key, epoch)
            await self._notify_listeners(key, command.payload)
        elif isinstance(command, StartProvisioningTimer):
            self._provisioning.start_timer(
                key,
                epoch,
                command.timeout,
                functools.partial(self._provisioning_expired, key, epoch),
            )
        elif isinstance(command, CancelProvisioningTimer):
            self._provisioning.cancel_timer(key)
        elif isinstance(command, DisposeHandle):
            entry = self._handles.get(key)
            if entry is not None and entry.epoch == epoch:
                await self._handles.dispose(key, sign_out=command.sign_out)
        elif isinstance(command, PurgeCredentials):
            self._purge_credentials(key)
        elif isinstance(command, ScheduleReconnect):
            self._scheduler.schedule(
                key,
                epoch,
                command.delay,
                command.attempt,
                functools.partial(self._run_reconnect, key, command.attempt),
            )
        elif isinstance(command, RecordDisconnect):
            DISCONNECTS_TOTAL.labels(command.disposition.value).inc()
            if command.disposition == Disposition.PROVISIONING_TIMEOUT:
                PROVISIONING_TIMEOUT_TOTAL.inc()
            LOGGER.info(
                "stage=disconnect key=%s epoch=%s disposition=%s code=%s",
                key,
                epoch,
                command.disposition.value,
                command.code,
            )

    async def _notify_listeners(self, key: str, payload: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(key, payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("stage=provisioning_listener_failed key=%s", key)

    async def _run_reconnect(self, key: str, attempt: int) -> None:
        if key in self._removals:
            LOGGER.info("stage=reconnect_skipped key=%s reason=removal_in_progress", key)
            return
        LOGGER.info("stage=reconnect_attempt key=%s attempt=%s", key, attempt)
        try:
            await self.create(key, reconnection=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=reconnect_failed key=%s attempt=%s", key, attempt)
            status = self._registry.get(key)
            if status is None or self._handles.is_live(key):
                return
            self._scheduler.clear(key)
            self._set_status(
                status.evolve(
                    state=LifecycleState.FATAL_ERROR,
                    provisioning_payload=None,
                    last_error=str(exc) or type(exc).__name__,
                ),
                reason="reconnect_failed",
            )

    # -- helpers --------------------------------------------------------

    def _purge_credentials(self, key: str) -> None:
        try:
            self._credentials.purge(key)
        except OSError as exc:
            LOGGER.error("stage=credentials_purge_failed key=%s error=%s", key, exc)

    def _set_status(self, status: SessionStatus, *, reason: Optional[str] = None) -> None:
        previous = self._registry.get(status.key)
        previous_state = previous.state.value if previous is not None else "none"
        if previous is None or previous.state != status.state or previous.epoch != status.epoch:
            if reason:
                LOGGER.info(
                    "stage=state_transition key=%s epoch=%s from=%s to=%s reason=%s",
                    status.key,
                    status.epoch,
                    previous_state,
                    status.state.value,
                    reason,
                )
            else:
                LOGGER.info(
                    "stage=state_transition key=%s epoch=%s from=%s to=%s",
                    status.key,
                    status.epoch,
                    previous_state,
                    status.state.value,
                )
        self._registry.upsert(status)
        if status.provisioning_payload is None:
            self._png_cache.pop(status.key, None)
        self._update_metrics()

    def _update_metrics(self) -> None:
        for state, count in self.stats_snapshot().items():
            SESSIONS_BY_STATE.labels(state).set(count)


__all__ = ["SessionLifecycleManager", "ProvisioningListener"]
