from __future__ import annotations

import asyncio

import pytest

from waworker.errors import HandleAlreadyLiveError
from waworker.guard import CreationGuard
from waworker.handles import HandleOwner
from waworker.registry import EpochClock, LifecycleState, SessionStatus, StatusRegistry
from waworker.tests.fakes import FakeHandle, wait_until
from waworker.timers import EpochTimers


def test_registry_storage_and_epochs():
    registry = StatusRegistry()
    status = registry.upsert(SessionStatus.new("a", 1))
    assert registry.get("a") is status
    assert "a" in registry and len(registry) == 1
    assert registry.remove("a") is status
    assert registry.get("a") is None

    clock = EpochClock()
    assert clock.current("a") == 0
    assert clock.advance("a") == 1
    assert clock.advance("a") == 2
    assert clock.is_current("a", 2)
    assert not clock.is_current("a", 1)


def test_status_evolve_tracks_transition_time():
    status = SessionStatus.new("a", 1)
    same = status.evolve(provisioning_payload="qr")
    assert same.last_transition_at == status.last_transition_at
    moved = status.evolve(state=LifecycleState.CONNECTED)
    assert moved.last_transition_at >= status.last_transition_at
    payload = moved.to_payload()
    assert payload["state"] == "connected"
    assert payload["epoch"] == 1


@pytest.mark.anyio
async def test_guard_runs_one_creation_per_key(anyio_backend):
    guard = CreationGuard()
    started = []

    async def factory():
        started.append(1)
        await asyncio.sleep(0.02)
        return len(started)

    results = await asyncio.gather(*(guard.run("k", factory) for _ in range(5)))
    assert results == [1] * 5
    assert started == [1]
    assert guard.get("k") is None


@pytest.mark.anyio
async def test_guard_releases_marker_on_failure(anyio_backend):
    guard = CreationGuard()

    async def failing():
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        await guard.run("k", failing)
    assert "k" not in guard
    await guard.wait("k")


@pytest.mark.anyio
async def test_guard_survives_cancelled_caller(anyio_backend):
    guard = CreationGuard()
    release = asyncio.Event()

    async def factory():
        await release.wait()
        return "done"

    caller = asyncio.ensure_future(guard.run("k", factory))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    assert "k" in guard

    release.set()
    assert await guard.run("k", factory) == "done"


@pytest.mark.anyio
async def test_handle_owner_dispose_is_scoped(anyio_backend):
    owner = HandleOwner()
    first = FakeHandle("k", None)
    owner.install("k", first, 1)
    with pytest.raises(HandleAlreadyLiveError):
        owner.install("k", FakeHandle("k", None), 2)

    first.fail_logout = True
    assert await owner.dispose("k", sign_out=True) is True
    assert first.logout_calls == 1
    assert first.end_calls == 1
    assert owner.get("k") is None
    assert await owner.dispose("k") is False

    second = FakeHandle("k", None)
    owner.install("k", second, 2)
    assert owner.owns("k", second)
    assert not owner.owns("k", first)


@pytest.mark.anyio
async def test_handle_owner_cancels_consumer(anyio_backend):
    owner = HandleOwner()
    handle = FakeHandle("k", None)
    owner.install("k", handle, 1)

    async def consume():
        async for _ in handle.events():
            pass

    task = asyncio.ensure_future(consume())
    owner.attach_consumer("k", handle, task)
    await owner.dispose("k", sign_out=False)
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled() or task.done()
    assert handle.logout_calls == 0


@pytest.mark.anyio
async def test_stale_timer_is_a_noop(anyio_backend):
    clock = EpochClock()
    timers = EpochTimers(clock)
    fired = []

    async def action():
        fired.append(clock.current("k"))

    epoch = clock.advance("k")
    timers.schedule("k", "t", epoch, 0.01, action)
    clock.advance("k")
    await asyncio.sleep(0.05)
    assert fired == []
    assert not timers.pending("k", "t")

    timers.schedule("k", "t", clock.current("k"), 0.01, action)
    await wait_until(lambda: fired == [2])


@pytest.mark.anyio
async def test_running_timer_is_not_cancelled_by_its_own_action(anyio_backend):
    clock = EpochClock()
    timers = EpochTimers(clock)
    finished = asyncio.Event()

    async def action():
        timers.cancel_all("k")
        await asyncio.sleep(0)
        finished.set()

    timers.schedule("k", "t", clock.advance("k"), 0.0, action)
    await asyncio.wait_for(finished.wait(), timeout=1.0)


@pytest.mark.anyio
async def test_cancel_all_cancels_every_timer_of_key(anyio_backend):
    clock = EpochClock()
    timers = EpochTimers(clock)
    fired = []

    async def action():
        fired.append(1)

    epoch = clock.advance("k")
    timers.schedule("k", "a", epoch, 0.02, action)
    timers.schedule("k", "b", epoch, 0.02, action)
    timers.schedule("other", "a", clock.advance("other"), 0.02, action)
    assert timers.cancel_all("k") == 2
    await asyncio.sleep(0.05)
    assert fired == [1]
    await timers.shutdown()
