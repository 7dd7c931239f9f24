"""Tests for per-session runtime management and idle cleanup."""

import time

import pytest

from runtime.manager import RuntimeManager


@pytest.fixture
def manager(make_runtime):
    return RuntimeManager(lambda sid: make_runtime()[0], idle_seconds=60, sweep_seconds=0.01)


def test_get_or_create_reuses_runtime(manager):
    first = manager.get_or_create("s1")
    assert manager.get_or_create("s1") is first
    assert manager.get_or_create("s2") is not first
    assert sorted(manager.session_ids()) == ["s1", "s2"]
    assert manager.get("missing") is None


@pytest.mark.asyncio
async def test_sweep_closes_only_idle_runtimes_without_tasks(manager):
    idle = manager.get_or_create("idle")
    busy = manager.get_or_create("busy")
    busy.registry.acquire("t1")
    fresh = manager.get_or_create("fresh")

    later = time.time() + 120
    fresh.last_activity = later
    closed = await manager.sweep(now=later)

    assert closed == 1
    assert manager.get("idle") is None
    assert manager.get("busy") is busy
    assert manager.get("fresh") is fresh
    assert idle.registry.active_ids() == []


@pytest.mark.asyncio
async def test_close_aborts_running_tasks(manager):
    runtime = manager.get_or_create("s1")
    ctx = runtime.registry.acquire("t1")
    assert await manager.close("s1")
    assert ctx.cancel.cancelled
    assert not await manager.close("s1")


@pytest.mark.asyncio
async def test_start_and_stop(manager):
    manager.get_or_create("s1")
    manager.start()
    assert manager._sweeper is not None
    await manager.stop()
    assert manager._sweeper is None
    assert len(manager) == 0
