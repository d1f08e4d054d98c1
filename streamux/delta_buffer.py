"""
Coalesces fine-grained text deltas into fewer, larger caller-visible chunks.
"""
import time
from typing import Callable, Dict, List, Optional, TypeVar

E = TypeVar("E")

DEFAULT_THRESHOLD = 20
DEFAULT_MAX_THRESHOLD = 400
DEFAULT_GROWTH = 20
DEFAULT_TIME_LIMIT = 0.5  # seconds


class DeltaBuffer:
    """
    Accumulates text fragments for a single message.

    The buffer is released once its length reaches the current threshold.
    After each release the threshold grows by ``growth`` up to
    ``max_threshold``, so early output is snappy and later output is batched.
    When ``time_limit`` seconds have passed since the last release, the next
    ``add`` releases whatever is buffered regardless of size.

    Nothing is ever dropped or reordered: the concatenation of everything
    returned by ``add`` and ``flush`` equals the concatenation of the input.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        max_threshold: int = DEFAULT_MAX_THRESHOLD,
        growth: int = DEFAULT_GROWTH,
        time_limit: Optional[float] = DEFAULT_TIME_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.max_threshold = max_threshold
        self.growth = growth
        self.time_limit = time_limit
        self._clock = clock
        self._parts: List[str] = []
        self._length = 0
        self._last_flush = clock()

    def __len__(self) -> int:
        return self._length

    def add(self, chunk: str) -> Optional[str]:
        """
        Add a fragment and return the buffered text if it should be released.

        Args:
            chunk (str): Text fragment (may be empty).

        Returns:
            Optional[str]: The released text, or None while still buffering.
        """
        if chunk:
            self._parts.append(chunk)
            self._length += len(chunk)

        if not self._length:
            return None

        if self._length >= self.threshold:
            out = self._release()
            self.threshold = min(self.threshold + self.growth, self.max_threshold)
            return out

        if self.time_limit is not None and self._clock() - self._last_flush >= self.time_limit:
            return self._release()

        return None

    def flush(self) -> Optional[str]:
        """Release any remaining text. Returns None when nothing is buffered."""
        if not self._length:
            return None
        return self._release()

    def _release(self) -> str:
        out = "".join(self._parts)
        self._parts = []
        self._length = 0
        self._last_flush = self._clock()
        return out


def buffer_delta(
    store: Dict[str, DeltaBuffer],
    message_id: str,
    chunk: str,
    make_event: Callable[[str], E],
) -> List[E]:
    """
    Route a fragment through the buffer kept for ``message_id``.

    A buffer is created on first use. Returns zero or one events built with
    ``make_event`` from the released text.
    """
    buf = store.get(message_id)
    if buf is None:
        buf = store[message_id] = DeltaBuffer()

    out = buf.add(chunk)
    return [make_event(out)] if out is not None else []


def flush_buffered_deltas(
    store: Dict[str, DeltaBuffer],
    make_event: Callable[[str, str], E],
) -> List[E]:
    """
    Flush every buffer in ``store`` and clear it.

    ``make_event`` receives ``(message_id, content)``; empty buffers produce
    no event.
    """
    events: List[E] = []
    for message_id, buf in store.items():
        out = buf.flush()
        if out is not None:
            events.append(make_event(message_id, out))
    store.clear()
    return events
