"""Retry an async operation with exponential backoff and jitter.

Attempts are strictly sequential: attempt k+1 starts only after attempt k
has failed and its backoff delay has elapsed. Pending delays are plain
``asyncio.sleep`` calls and are not cancellable other than by cancelling
the awaiting task.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict

from src.observability.metrics import RETRY_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.1


class RetryOptions(BaseModel):
    """Per-call retry configuration. Delays are in seconds."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    on_retry: Callable[[int, Exception], None] | None = None
    # When set and returning False, the error is raised without further attempts.
    retry_if: Callable[[Exception], bool] | None = None


# Full search: patient, three attempts.
SEARCH_RETRY = RetryOptions(max_attempts=3, base_delay=1.0, max_delay=10.0)

# Autocomplete: fewer, shorter retries to stay responsive.
SUGGESTION_RETRY = RetryOptions(max_attempts=2, base_delay=0.5, max_delay=5.0)


def compute_delay(attempt: int, options: RetryOptions) -> float:
    """Backoff delay (without jitter) after the given failed attempt."""
    delay: float = options.base_delay * options.backoff_factor ** (attempt - 1)
    return min(delay, options.max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
    operation: str = "default",
) -> T:
    """Call ``fn`` until it succeeds or ``options.max_attempts`` is reached.

    Args:
        fn: Zero-argument coroutine factory; invoked once per attempt.
        options: Retry configuration. Defaults to ``RetryOptions()``.
        sleep: Awaitable delay function (injectable for tests).
        rand: Uniform [0, 1) source used for jitter.
        operation: Label for the retry metric.

    Returns:
        The first successful result of ``fn``.

    Raises:
        The last exception raised by ``fn`` once attempts are exhausted,
        or immediately if ``options.retry_if`` rejects it.
    """
    opts = options or RetryOptions()
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= opts.max_attempts:
                raise
            if opts.retry_if is not None and not opts.retry_if(exc):
                raise

            delay = compute_delay(attempt, opts)
            jitter = delay * JITTER_RATIO * rand()

            RETRY_ATTEMPTS_TOTAL.labels(operation=operation).inc()
            if opts.on_retry is not None:
                try:
                    opts.on_retry(attempt, exc)
                except Exception:
                    logger.warning("on_retry hook raised; ignoring", exc_info=True)

            await sleep(delay + jitter)
            attempt += 1
