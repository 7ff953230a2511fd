"""Unit tests for workqueue.py - per-key work queue with backoff."""

import asyncio

import pytest

from workqueue import WorkQueue, backoff_delay


def no_jitter():
    return 0.5


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles_per_failure(self):
        delays = [backoff_delay(n, 5.0, 300.0, 0.1, no_jitter) for n in range(4)]
        assert delays == [5.0, 10.0, 20.0, 40.0]

    def test_capped_at_max(self):
        assert backoff_delay(8, 5.0, 300.0, 0.1, no_jitter) == 300.0
        assert backoff_delay(1000, 5.0, 300.0, 0.1, no_jitter) == 300.0

    def test_jitter_bounds(self):
        low = backoff_delay(0, 10.0, 300.0, 0.1, lambda: 0.0)
        high = backoff_delay(0, 10.0, 300.0, 0.1, lambda: 0.999999)
        assert low == pytest.approx(9.0)
        assert high == pytest.approx(11.0, rel=1e-4)

    def test_never_negative(self):
        assert backoff_delay(0, 1.0, 10.0, 2.0, lambda: 0.0) == 0.0


@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for WorkQueue."""

    async def test_add_and_get(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("b")

        assert await queue.get() == "a"
        assert await queue.get() == "b"

    async def test_duplicates_collapse(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("a")

        assert len(queue) == 1

    async def test_key_not_handed_out_while_processing(self):
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        assert len(queue) == 0
        assert queue.is_processing("a")

        queue.done(key)
        assert len(queue) == 1
        assert not queue.is_processing("a")
        assert await queue.get() == "a"

    async def test_done_without_readd_does_not_requeue(self):
        queue = WorkQueue()
        queue.add("a")
        queue.done(await queue.get())
        assert len(queue) == 0

    async def test_get_waits_for_add(self):
        queue = WorkQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.add("a")
        assert await asyncio.wait_for(getter, timeout=1) == "a"

    async def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("a", 0.05)
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_add_after_keeps_earliest_deadline(self):
        queue = WorkQueue()
        queue.add_after("a", 10)
        queue.add_after("a", 0.01)
        queue.add_after("a", 20)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_add_after_zero_is_immediate(self):
        queue = WorkQueue()
        queue.add_after("a", 0)
        assert len(queue) == 1

    async def test_rate_limited_backoff_grows_and_forget_resets(self):
        queue = WorkQueue(base_delay=1.0, max_delay=4.0, rand=no_jitter)

        delays = [queue.add_rate_limited("a") for _ in range(4)]

        assert delays == [1.0, 2.0, 4.0, 4.0]
        assert queue.num_requeues("a") == 4
        queue.forget("a")
        assert queue.num_requeues("a") == 0
        assert queue.add_rate_limited("a") == 1.0
        queue.shutdown()

    async def test_failures_are_tracked_per_key(self):
        queue = WorkQueue(base_delay=1.0, rand=no_jitter)
        queue.add_rate_limited("a")
        queue.add_rate_limited("a")

        assert queue.add_rate_limited("b") == 1.0
        queue.shutdown()

    async def test_shutdown_releases_waiters(self):
        queue = WorkQueue()
        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shutdown()

        assert await asyncio.gather(*getters) == [None, None, None]
        assert queue.shutting_down

    async def test_shutdown_drops_pending_and_ignores_adds(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add_after("b", 0.01)
        queue.shutdown()
        queue.add("c")

        assert len(queue) == 0
        assert await queue.get() is None
        await asyncio.sleep(0.02)
        assert len(queue) == 0

    async def test_cancelled_getter_does_not_lose_wakeup(self):
        queue = WorkQueue()
        first = asyncio.create_task(queue.get())
        second = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        first.cancel()
        queue.add("a")

        assert await asyncio.wait_for(second, timeout=1) == "a"

    async def test_is_backing_off(self):
        queue = WorkQueue(base_delay=60.0, rand=no_jitter)
        queue.add_after("plain", 60)
        queue.add_rate_limited("failed")

        assert queue.is_backing_off("failed")
        assert not queue.is_backing_off("plain")
        assert not queue.is_backing_off("other")

        queue.forget("failed")
        assert not queue.is_backing_off("failed")
        queue.shutdown()
