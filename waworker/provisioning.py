"""Pairing workflow bookkeeping and payload rendering."""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Dict

import qrcode

from .timers import EpochTimers, TimerAction
from .transitions import ProvisioningPhase

LOGGER = logging.getLogger("waworker.provisioning")

PROVISIONING_TIMER = "provisioning"


@dataclass(slots=True)
class ProvisioningFlow:
    epoch: int
    phase: ProvisioningPhase = ProvisioningPhase.IDLE


class ProvisioningTracker:
    """Keeps the pairing phase of the current epoch of every key."""

    def __init__(self, timers: EpochTimers) -> None:
        self._timers = timers
        self._flows: Dict[str, ProvisioningFlow] = {}

    def begin(self, key: str, epoch: int) -> ProvisioningFlow:
        self._timers.cancel(key, PROVISIONING_TIMER)
        flow = ProvisioningFlow(epoch=epoch)
        self._flows[key] = flow
        return flow

    def phase(self, key: str, epoch: int) -> ProvisioningPhase:
        flow = self._flows.get(key)
        if flow is None or flow.epoch != epoch:
            return ProvisioningPhase.IDLE
        return flow.phase

    def set_phase(self, key: str, epoch: int, phase: ProvisioningPhase) -> None:
        flow = self._flows.get(key)
        if flow is None or flow.epoch != epoch:
            return
        if flow.phase != phase:
            LOGGER.info(
                "stage=provisioning_phase key=%s epoch=%s from=%s to=%s",
                key,
                epoch,
                flow.phase.value,
                phase.value,
            )
        flow.phase = phase

    def start_timer(self, key: str, epoch: int, timeout: float, action: TimerAction) -> None:
        self._timers.schedule(key, PROVISIONING_TIMER, epoch, timeout, action)

    def cancel_timer(self, key: str) -> bool:
        return self._timers.cancel(key, PROVISIONING_TIMER)

    def forget(self, key: str) -> None:
        self.cancel_timer(key)
        self._flows.pop(key, None)


def build_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=14,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


__all__ = [
    "PROVISIONING_TIMER",
    "ProvisioningFlow",
    "ProvisioningTracker",
    "build_qr_png",
    "qr_data_url",
]
