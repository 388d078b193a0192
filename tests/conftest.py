from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import waworker.api as wa_api
from waworker.errors import (
    AlreadyExistsError,
    NotConnectedError,
    NotFoundError,
    ProvisioningExpiredError,
)
from waworker.registry import LifecycleState, SessionStatus


class StubLifecycleManager:
    def __init__(self) -> None:
        self.statuses: Dict[str, SessionStatus] = {}
        self.payloads: Dict[str, str] = {}
        self.expired: set[str] = set()
        self.png = b"\x89PNG-stub"
        self.sent: List[Tuple[str, str, dict]] = []
        self.removed: List[str] = []
        self.raise_on_create: Optional[Exception] = None
        self.raise_on_send: Optional[Exception] = None
        self.started = False

    async def start(self) -> None:  # pragma: no cover - lifecycle
        self.started = True

    async def shutdown(self) -> None:  # pragma: no cover - lifecycle
        self.started = False

    def put(self, key: str, state: LifecycleState, **changes) -> SessionStatus:
        status = SessionStatus.new(key, 1)
        if state != status.state:
            changes["state"] = state
        status = status.evolve(**changes) if changes else status
        self.statuses[key] = status
        return status

    async def create(self, key: str, *, reconnection: bool = False) -> SessionStatus:
        if self.raise_on_create is not None:
            raise self.raise_on_create
        current = self.statuses.get(key)
        if current is not None and current.state == LifecycleState.CONNECTED:
            raise AlreadyExistsError(key)
        return self.put(key, LifecycleState.CONNECTING)

    def status(self, key: str) -> SessionStatus:
        if key not in self.statuses:
            raise NotFoundError(key)
        return self.statuses[key]

    def list_all(self) -> List[SessionStatus]:
        return list(self.statuses.values())

    async def remove(self, key: str) -> bool:
        if self.statuses.pop(key, None) is None:
            return False
        self.removed.append(key)
        return True

    def provisioning_payload(self, key: str) -> str:
        self.status(key)
        if key in self.expired:
            raise ProvisioningExpiredError(key)
        if key not in self.payloads:
            raise NotFoundError(key, "no provisioning payload")
        return self.payloads[key]

    def provisioning_png(self, key: str) -> bytes:
        self.provisioning_payload(key)
        return self.png

    def _check_send(self, key: str) -> None:
        if self.status(key).state != LifecycleState.CONNECTED:
            raise NotConnectedError(key, self.status(key).state.value)
        if self.raise_on_send is not None:
            raise self.raise_on_send

    async def send_text(self, key: str, to: str, text: str) -> str:
        self._check_send(key)
        self.sent.append((key, to, {"text": text}))
        return f"{to}@s.whatsapp.net"

    async def send_media(self, key: str, to: str, media_type: str, **kwargs) -> str:
        self._check_send(key)
        if kwargs.get("data") == "!!":
            raise ValueError("invalid_base64")
        self.sent.append((key, to, {"type": media_type, **kwargs}))
        return f"{to}@s.whatsapp.net"

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in LifecycleState}
        for status in self.statuses.values():
            counts[status.state.value] += 1
        return counts


@pytest.fixture
def waworker_client():
    stub = StubLifecycleManager()
    app = wa_api.create_app(manager=stub)
    with TestClient(app) as client:
        yield client, stub
