from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from waworker.manager import SessionLifecycleManager
from waworker.tests.fakes import TEST_POLICY, FakeTransport, MemoryCredentialStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def delivered() -> list:
    return []


@pytest.fixture
def published() -> list:
    return []


@pytest.fixture
async def manager(anyio_backend, transport, store, delivered, published):
    async def _deliver(key, batch):
        delivered.append((key, batch))

    instance = SessionLifecycleManager(
        transport, store, policy=TEST_POLICY, delivery=_deliver
    )
    instance.add_provisioning_listener(lambda key, payload: published.append((key, payload)))
    yield instance
    await instance.shutdown()
