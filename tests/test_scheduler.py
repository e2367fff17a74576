"""Tests for the task scheduler and media deletion scheduling."""
import asyncio
import time

import pytest

from scheduler import MediaDeletionScheduler, Scheduler


@pytest.mark.asyncio
async def test_call_later_fires_when_due(clock):
    scheduler = Scheduler(clock=clock.monotonic)
    fired = []

    async def callback():
        fired.append(clock.monotonic())

    scheduler.call_later(5, callback)
    clock.advance(4)
    assert await scheduler.run_due() == 0
    clock.advance(1)
    assert await scheduler.run_due() == 1
    assert fired == [1005]
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_tasks_fire_in_time_order(clock):
    scheduler = Scheduler(clock=clock.monotonic)
    order = []

    def record(name):
        async def _cb():
            order.append(name)
        return _cb

    scheduler.call_later(3, record("late"))
    scheduler.call_later(1, record("early"))
    scheduler.call_later(2, record("middle"))
    clock.advance(10)
    await scheduler.run_due()

    assert order == ["early", "middle", "late"]


@pytest.mark.asyncio
async def test_cancelled_task_never_fires(clock):
    scheduler = Scheduler(clock=clock.monotonic)
    fired = []

    async def callback():
        fired.append(True)

    task = scheduler.call_later(1, callback)
    assert task.cancel()
    assert not task.cancel()
    clock.advance(2)
    await scheduler.run_due()

    assert fired == []


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_others(clock):
    scheduler = Scheduler(clock=clock.monotonic)
    fired = []

    async def broken():
        raise RuntimeError("boom")

    async def healthy():
        fired.append(True)

    scheduler.call_later(1, broken)
    scheduler.call_later(1, healthy)
    clock.advance(1)

    assert await scheduler.run_due() == 2
    assert fired == [True]


@pytest.mark.asyncio
async def test_run_forever_uses_real_time():
    scheduler = Scheduler(clock=time.monotonic)
    fired = asyncio.Event()

    async def callback():
        fired.set()

    scheduler.start()
    scheduler.call_later(0.01, callback)
    await asyncio.wait_for(fired.wait(), timeout=2)
    await scheduler.stop()


class TestMediaDeletionScheduler:
    @pytest.mark.asyncio
    async def test_burn_after_reading_waits_for_grace(self, clock, blobs):
        deletions = MediaDeletionScheduler(Scheduler(clock=clock.monotonic), blobs)
        await blobs.write("a.png", b"data")
        deletions.schedule("a.png", 0)

        clock.advance(29)
        await deletions.scheduler.run_due()
        assert await blobs.exists("a.png")

        clock.advance(1)
        await deletions.scheduler.run_due()
        assert not await blobs.exists("a.png")
        assert not deletions.is_scheduled("a.png")

    @pytest.mark.asyncio
    async def test_ttl_deletion(self, clock, blobs):
        deletions = MediaDeletionScheduler(Scheduler(clock=clock.monotonic), blobs)
        await blobs.write("b.png", b"data")
        deletions.schedule("b.png", 30)

        clock.advance(29.5)
        await deletions.scheduler.run_due()
        assert await blobs.exists("b.png")

        clock.advance(0.5)
        await deletions.scheduler.run_due()
        assert not await blobs.exists("b.png")

    @pytest.mark.asyncio
    async def test_missing_blob_is_tolerated(self, clock, blobs):
        deletions = MediaDeletionScheduler(Scheduler(clock=clock.monotonic), blobs)
        await blobs.write("c.png", b"data")
        deletions.schedule("c.png", 5)
        await blobs.delete("c.png")

        clock.advance(5)
        assert await deletions.scheduler.run_due() == 1

    @pytest.mark.asyncio
    async def test_cancel_keeps_blob(self, clock, blobs):
        deletions = MediaDeletionScheduler(Scheduler(clock=clock.monotonic), blobs)
        await blobs.write("d.png", b"data")
        deletions.schedule("d.png", 5)

        assert deletions.cancel("d.png")
        assert not deletions.cancel("d.png")
        clock.advance(10)
        await deletions.scheduler.run_due()
        assert await blobs.exists("d.png")

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_pending_deletion(self, clock, blobs):
        deletions = MediaDeletionScheduler(Scheduler(clock=clock.monotonic), blobs)
        await blobs.write("e.png", b"data")
        deletions.schedule("e.png", 5)
        deletions.schedule("e.png", 60)

        assert deletions.scheduler.pending == 1
        clock.advance(10)
        await deletions.scheduler.run_due()
        assert await blobs.exists("e.png")
