import asyncio

import pytest
from structlog.testing import capture_logs


@pytest.mark.asyncio
async def test_spawned_task_is_tracked_until_done(registry):
    gate = asyncio.Event()

    async def work():
        await gate.wait()
        return 42

    task = registry.spawn(work(), name="work")
    await asyncio.sleep(0)

    active = registry.active_tasks()
    assert len(active) == 1
    assert next(iter(active.values()))["name"] == "work"

    gate.set()
    assert await registry.drain(timeout=1) is True
    assert task.result() == 42
    assert registry.active_tasks() == {}


@pytest.mark.asyncio
async def test_failed_task_is_logged(registry):
    async def explode():
        raise RuntimeError("kaboom")

    with capture_logs() as logs:
        task = registry.spawn(explode(), name="explode")
        await registry.drain(timeout=1)

    assert isinstance(task.exception(), RuntimeError)
    failure = next(log for log in logs if log["event"] == "task_registry.task_failed")
    assert failure["task"] == "explode"
    assert failure["error_type"] == "RuntimeError"
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_while_draining(registry):
    finished = []

    async def child():
        await asyncio.sleep(0)
        finished.append("child")

    async def parent():
        await asyncio.sleep(0)
        registry.spawn(child(), name="child")
        finished.append("parent")

    registry.spawn(parent(), name="parent")

    assert await registry.drain(timeout=1) is True
    assert finished == ["parent", "child"]


@pytest.mark.asyncio
async def test_drain_times_out(registry):
    registry.spawn(asyncio.sleep(10), name="sleeper")

    assert await registry.drain(timeout=0.01) is False

    await registry.graceful_shutdown(timeout=0)


@pytest.mark.asyncio
async def test_graceful_shutdown_cancels_stragglers(registry):
    async def quick():
        return "done"

    quick_task = registry.spawn(quick(), name="quick")
    slow_task = registry.spawn(asyncio.sleep(10), name="slow")

    results = await registry.graceful_shutdown(timeout=0.05)

    assert quick_task.result() == "done"
    assert slow_task.cancelled()
    assert sorted(results.values()) == ["cancelled", "completed"]
    assert registry.is_shutting_down()
    assert len(registry) == 0
