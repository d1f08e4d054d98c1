"""
Per-owner FIFO execution of async tasks.

Tasks submitted under the same owner key (usually an agent id) run one at a
time in submission order. Different keys never block each other.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, TypeVar

from .errors import QueueClearedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class QueueEntry:
    owner_key: str
    task: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"


class SequentialQueue:
    def __init__(self):
        self._queues: Dict[str, Deque[QueueEntry]] = {}
        self._workers: Dict[str, "asyncio.Task[None]"] = {}

    async def run_sequential(self, owner_key: str, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``task`` after every task previously submitted under ``owner_key``.

        Args:
            owner_key (str): Queue to join.
            task (Callable): Zero-argument coroutine function.

        Returns:
            The task's result. A failing task re-raises here without
            affecting the tasks queued behind it.

        Raises:
            QueueClearedError: If the queue was cleared before the task started.
        """
        loop = asyncio.get_running_loop()
        entry = QueueEntry(owner_key, task, loop.create_future())
        self._queues.setdefault(owner_key, deque()).append(entry)

        if not self.is_processing(owner_key):
            self._workers[owner_key] = loop.create_task(self._process(owner_key))
        return await entry.future

    async def _process(self, owner_key: str) -> None:
        try:
            while self._queues.get(owner_key):
                entry = self._queues[owner_key].popleft()
                if entry.future.done():
                    # Caller stopped waiting before the task started
                    continue
                try:
                    result = await entry.task()
                except Exception as e:
                    if not entry.future.done():
                        entry.future.set_exception(e)
                except BaseException:
                    # Cancellation ends this worker; the entry must still settle
                    if not entry.future.done():
                        entry.future.cancel()
                    raise
                else:
                    if not entry.future.done():
                        entry.future.set_result(result)
        finally:
            self._workers.pop(owner_key, None)
            if self._queues.get(owner_key):
                logger.debug("Restarting worker for '%s'", owner_key)
                self._workers[owner_key] = asyncio.get_running_loop().create_task(self._process(owner_key))
            else:
                self._queues.pop(owner_key, None)

    def get_queue_size(self, owner_key: str) -> int:
        """Number of tasks waiting to start (the running one is not counted)."""
        queue = self._queues.get(owner_key)
        return len(queue) if queue else 0

    def is_processing(self, owner_key: str) -> bool:
        worker = self._workers.get(owner_key)
        return worker is not None and not worker.done()

    def clear_queue(self, owner_key: str) -> None:
        """Reject every task under ``owner_key`` that has not started yet."""
        queue = self._queues.get(owner_key)
        if not queue:
            return
        logger.debug("Clearing %d pending task(s) for '%s'", len(queue), owner_key)
        while queue:
            entry = queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(QueueClearedError(owner_key))

    def clear_all(self) -> None:
        for owner_key in list(self._queues):
            self.clear_queue(owner_key)


sequential_queue = SequentialQueue()


async def run_sequential(owner_key: str, task: Callable[[], Awaitable[T]]) -> T:
    return await sequential_queue.run_sequential(owner_key, task)
