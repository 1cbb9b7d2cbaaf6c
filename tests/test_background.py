from __future__ import annotations

import asyncio

import pytest

from research_chat.services.background import BackgroundTaskRunner


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_while_draining():
    runner = BackgroundTaskRunner()
    finished: list[str] = []

    async def follow_up():
        await asyncio.sleep(0.01)
        finished.append("follow_up")

    async def first():
        await asyncio.sleep(0.01)
        finished.append("first")
        runner.spawn(follow_up(), name="follow_up")

    runner.spawn(first(), name="first")
    await runner.drain(timeout=1)

    assert finished == ["first", "follow_up"]
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_drain_gives_up_after_timeout():
    runner = BackgroundTaskRunner()
    task = runner.spawn(asyncio.sleep(5), name="slow")

    await runner.drain(timeout=0.02)

    assert runner.pending == 1
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_failed_task_is_released():
    runner = BackgroundTaskRunner()

    async def broken():
        raise RuntimeError("ledger down")

    runner.spawn(broken(), name="broken")
    await runner.drain(timeout=1)
    assert runner.pending == 0
