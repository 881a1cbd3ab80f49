"""Fixed-window, per-identifier request admission control.

Entries are created lazily and replaced wholesale when their window expires;
there is no background sweep. Bursts at window edges are accepted.
"""

import time
from collections.abc import Callable

from pydantic import BaseModel

DEFAULT_IDENTIFIER = "default"


class RateLimitEntry(BaseModel):
    count: int
    reset_time: float  # epoch seconds


class RateLimiter:
    """Count requests per identifier inside fixed windows of ``window_seconds``."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, RateLimitEntry] = {}

    def is_allowed(self, identifier: str = DEFAULT_IDENTIFIER) -> bool:
        """Admit or reject one request for ``identifier``."""
        now = self._clock()
        entry = self._requests.get(identifier)

        if entry is None or now > entry.reset_time:
            self._requests[identifier] = RateLimitEntry(count=1, reset_time=now + self.window_seconds)
            return True

        if entry.count >= self.max_requests:
            return False

        entry.count += 1
        return True

    def get_remaining_requests(self, identifier: str = DEFAULT_IDENTIFIER) -> int:
        entry = self._requests.get(identifier)
        if entry is None or self._clock() > entry.reset_time:
            return self.max_requests
        return max(0, self.max_requests - entry.count)

    def get_reset_time(self, identifier: str = DEFAULT_IDENTIFIER) -> float:
        entry = self._requests.get(identifier)
        if entry is None:
            return self._clock() + self.window_seconds
        return entry.reset_time

    def reset(self) -> None:
        """Forget all tracked identifiers."""
        self._requests.clear()
