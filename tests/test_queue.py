import asyncio

import pytest

from streamux.errors import QueueClearedError
from streamux.queue import SequentialQueue, run_sequential, sequential_queue


def _task(log, name, delay):
    async def run():
        log.append(f"start:{name}")
        await asyncio.sleep(delay)
        log.append(f"end:{name}")
        return name
    return run


class TestSequentialQueue:

    @pytest.mark.asyncio
    async def test_runs_in_submission_order(self):
        queue = SequentialQueue()
        log = []
        results = await asyncio.gather(
            queue.run_sequential("agent", _task(log, "A", 0.05)),
            queue.run_sequential("agent", _task(log, "B", 0.02)),
            queue.run_sequential("agent", _task(log, "C", 0)),
        )
        assert results == ["A", "B", "C"]
        assert log == ["start:A", "end:A", "start:B", "end:B", "start:C", "end:C"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        queue = SequentialQueue()
        log = []
        await asyncio.gather(
            queue.run_sequential("one", _task(log, "slow", 0.05)),
            queue.run_sequential("two", _task(log, "fast", 0)),
        )
        assert log.index("end:fast") < log.index("end:slow")

    @pytest.mark.asyncio
    async def test_failure_does_not_block_followers(self):
        queue = SequentialQueue()

        async def boom():
            raise ValueError("boom")

        async def ok():
            return "ok"

        first = asyncio.ensure_future(queue.run_sequential("agent", boom))
        second = asyncio.ensure_future(queue.run_sequential("agent", ok))
        with pytest.raises(ValueError):
            await first
        assert await second == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_task_does_not_block_followers(self):
        queue = SequentialQueue()

        async def cancelled():
            raise asyncio.CancelledError()

        async def ok():
            return "ok"

        first = asyncio.ensure_future(queue.run_sequential("agent", cancelled))
        second = asyncio.ensure_future(queue.run_sequential("agent", ok))

        assert await asyncio.wait_for(second, timeout=1) == "ok"
        await asyncio.wait({first}, timeout=1)
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_idle_keys_are_dropped(self):
        queue = SequentialQueue()
        log = []
        await asyncio.gather(
            queue.run_sequential("one", _task(log, "A", 0)),
            queue.run_sequential("two", _task(log, "B", 0)),
        )
        await asyncio.sleep(0)

        assert queue._queues == {}
        assert not queue.is_processing("one")

    @pytest.mark.asyncio
    async def test_clear_queue_rejects_pending(self):
        queue = SequentialQueue()
        log = []
        running = asyncio.ensure_future(queue.run_sequential("agent", _task(log, "A", 0.02)))
        pending = asyncio.ensure_future(queue.run_sequential("agent", _task(log, "B", 0)))
        await asyncio.sleep(0.005)

        assert queue.is_processing("agent")
        assert queue.get_queue_size("agent") == 1
        queue.clear_queue("agent")

        assert await running == "A"
        with pytest.raises(QueueClearedError):
            await pending
        assert "start:B" not in log
        assert queue.get_queue_size("agent") == 0

    @pytest.mark.asyncio
    async def test_usable_after_clear_all(self):
        queue = SequentialQueue()
        log = []
        running = asyncio.ensure_future(queue.run_sequential("agent", _task(log, "A", 0.01)))
        await asyncio.sleep(0.002)
        queue.clear_all()
        later = asyncio.ensure_future(queue.run_sequential("agent", _task(log, "B", 0)))
        assert await running == "A"
        assert await later == "B"
        assert not queue.is_processing("agent")


@pytest.mark.asyncio
async def test_module_level_helper_uses_default_queue():
    log = []
    assert await run_sequential("helper-agent", _task(log, "X", 0)) == "X"
    assert not sequential_queue.is_processing("helper-agent")
