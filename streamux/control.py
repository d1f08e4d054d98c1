"""
Per-request control surface: pause/resume, abort, and the agent context that
carries them into adapters.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from .errors import StreamAbortedError
from .types import ModelSettings, StreamEventType, Tool

logger = logging.getLogger(__name__)

PAUSE_POLL_INTERVAL = 0.1  # seconds


class AbortSignal:
    """
    One-way cancellation flag.

    Once ``abort()`` is called the signal stays aborted for good.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info("Abort requested%s", f": {reason}" if reason else "")

    async def wait(self) -> None:
        """Block until ``abort()`` is called."""
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise StreamAbortedError(f"Operation aborted: {self.reason}" if self.reason else "Operation aborted")


class PauseController:
    """
    Cooperative pause switch polled by adapters between chunks.
    """

    def __init__(self):
        self._paused = False
        self._listeners: Dict[str, List[Callable[[], None]]] = {"paused": [], "resumed": []}

    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.info("Paused")
            self._emit("paused")

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            logger.info("Resumed")
            self._emit("resumed")

    def on(self, event: str, listener: Callable[[], None]) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable[[], None]) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners[event]):
            listener()

    async def wait_while_paused(
        self,
        abort: Optional[AbortSignal] = None,
        interval: float = PAUSE_POLL_INTERVAL,
    ) -> None:
        """
        Block while paused.

        Raises:
            StreamAbortedError: If ``abort`` fires, whether or not we are paused.
        """
        while self._paused and not (abort and abort.aborted):
            await asyncio.sleep(interval)
        if abort is not None:
            abort.raise_if_aborted()


async def _next_item(iterator: Any) -> Any:
    return await iterator.__anext__()


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if close is None:
        return
    result = close()
    if asyncio.iscoroutine(result):
        await result


async def abortable(stream: Any, abort: AbortSignal) -> AsyncIterator[Any]:
    """
    Iterate an async stream until it ends or ``abort`` fires.

    Each pending ``__anext__`` is raced against the abort signal, so a
    stalled upstream is cancelled as soon as the abort arrives. The stream,
    and the SDK response behind it when that has ``close``/``aclose``, is
    closed however iteration stops.

    Raises:
        StreamAbortedError: When ``abort`` fires.
    """
    iterator = stream.__aiter__()
    pending: Optional["asyncio.Future[Any]"] = None
    waiter: Optional["asyncio.Future[None]"] = None
    try:
        while True:
            abort.raise_if_aborted()
            pending = asyncio.ensure_future(_next_item(iterator))
            waiter = asyncio.ensure_future(abort.wait())
            await asyncio.wait({pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            if not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
                abort.raise_if_aborted()
            done, pending = pending, None
            try:
                item = done.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        for task in (pending, waiter):
            if task is not None and not task.done():
                task.cancel()
        if pending is not None:
            # The upstream must stop running before it can be closed
            await asyncio.wait({pending})
        await _close_stream(iterator)
        if iterator is not stream:
            await _close_stream(stream)


@dataclass
class AgentContext:
    """
    Everything a single request needs beyond its history and model id.

    Args:
        agent_id: Owner key for sequential tool execution and logging.
        settings: Sampling and output settings forwarded to the vendor.
        tools: Tool definitions offered to the model.
        instructions: Extra system text prepended to the history.
        sequential_tools: Run this agent's tool calls one at a time.
        allowed_events: When set, only these event types reach the caller.
        pause / abort: Control handles checked between upstream chunks.
    """
    agent_id: str = "default"
    settings: ModelSettings = field(default_factory=dict)
    tools: List[Tool] = field(default_factory=list)
    instructions: Optional[str] = None
    sequential_tools: bool = False
    allowed_events: Optional[Set[StreamEventType]] = None
    pause: PauseController = field(default_factory=PauseController)
    abort: AbortSignal = field(default_factory=AbortSignal)

    async def checkpoint(self) -> None:
        """Honour pause and abort; called by adapters between chunks."""
        self.abort.raise_if_aborted()
        if self.pause.is_paused():
            await self.pause.wait_while_paused(self.abort)
