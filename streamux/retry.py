"""
Exponential backoff for one-shot calls and for event streams.

Streams are retried only until their first item has been yielded: after
that the consumer may already have acted on partial output, so any failure
is passed through unchanged.
"""
import asyncio
import errno
import logging
import random
from dataclasses import dataclass, field
from typing import (
    Any, AsyncIterator, Awaitable, Callable, FrozenSet, Optional, Tuple, Type, TypeVar,
)

import anthropic
import httpx
import openai

from .errors import StreamAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_CODES: FrozenSet[str] = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "EPIPE",
    "EHOSTUNREACH",
    "EAI_AGAIN",
    "ENETUNREACH",
    "ECONNABORTED",
    "ESOCKETTIMEDOUT",
})

RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({
    408,  # Request Timeout
    429,  # Too Many Requests
    500,
    502,
    503,
    504,
    522,  # Cloudflare: connection timed out
    524,  # Cloudflare: a timeout occurred
})

RETRYABLE_MESSAGES: Tuple[str, ...] = (
    "fetch failed",
    "network error",
    "ECONNRESET",
    "ETIMEDOUT",
    "Incomplete JSON segment",
    "Connection error",
    "Request timeout",
)

TRANSPORT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TransportError,
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


@dataclass
class RetryOptions:
    """
    Backoff configuration. Delays are in seconds.
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: FrozenSet[str] = RETRYABLE_ERROR_CODES
    retryable_status_codes: FrozenSet[int] = RETRYABLE_STATUS_CODES
    retryable_messages: Tuple[str, ...] = RETRYABLE_MESSAGES
    on_retry: Optional[Callable[[BaseException, int], None]] = field(default=None, repr=False)


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


def _error_status(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException, options: Optional[RetryOptions] = None) -> bool:
    """
    Decide whether ``error`` is a transient failure worth another attempt.

    Checks, in order: cancellation (never retried), network error codes,
    HTTP status codes, transport exception types and known message fragments.
    """
    opts = options or RetryOptions()
    if isinstance(error, (StreamAbortedError, asyncio.CancelledError)):
        return False

    code = _error_code(error)
    if code and code in opts.retryable_errors:
        return True

    status = _error_status(error)
    if status is not None:
        return status in opts.retryable_status_codes

    if isinstance(error, TRANSPORT_EXCEPTIONS):
        return True

    message = str(error)
    if any(fragment in message for fragment in opts.retryable_messages):
        return True

    # Adapters wrap SDK errors; classify by the original cause
    cause = error.__cause__
    if cause is not None and cause is not error:
        return is_retryable_error(cause, opts)
    return False


def calculate_delay(attempt: int, options: Optional[RetryOptions] = None) -> float:
    """
    Backoff delay before retry number ``attempt`` (1-based), with +/-10% jitter.
    """
    opts = options or RetryOptions()
    base = opts.initial_delay * (opts.backoff_multiplier ** (attempt - 1))
    delay = min(base, opts.max_delay)
    jitter = delay * 0.1 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


def _should_give_up(error: BaseException, attempt: int, opts: RetryOptions) -> bool:
    return not is_retryable_error(error, opts) or attempt > opts.max_retries


async def _before_retry(error: BaseException, attempt: int, opts: RetryOptions,
                        sleep: Callable[[float], Awaitable[Any]]) -> None:
    delay = calculate_delay(attempt, opts)
    logger.warning(
        "Attempt %d/%d failed (%s), retrying in %.2fs",
        attempt, opts.max_retries + 1, error, delay,
    )
    if opts.on_retry:
        opts.on_retry(error, attempt)
    await sleep(delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, retrying transient failures.

    Args:
        fn: Zero-argument coroutine function.
        options (RetryOptions, optional): Backoff configuration.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        The last error once it is not retryable or retries are exhausted.
    """
    opts = options or RetryOptions()
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if _should_give_up(e, attempt, opts):
                raise
            await _before_retry(e, attempt, opts, sleep)
            attempt += 1


async def retry_stream_with_backoff(
    create_stream: Callable[[], AsyncIterator[T]],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[T]:
    """
    Re-create a stream after transient failures, but only before it commits.

    The stream commits as soon as its first item is yielded. A failure after
    that point propagates immediately so nothing is ever delivered twice.
    """
    opts = options or RetryOptions()
    committed = False
    attempt = 1
    while True:
        stream = create_stream()
        try:
            async for item in stream:
                committed = True
                yield item
            return
        except Exception as e:
            if committed or _should_give_up(e, attempt, opts):
                raise
            await _before_retry(e, attempt, opts, sleep)
            attempt += 1
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
