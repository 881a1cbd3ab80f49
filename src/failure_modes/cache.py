"""Short-lived in-memory cache of the full failure-mode catalogue."""

import time
from collections.abc import Callable

from src.failure_modes.models import FailureMode
from src.observability.metrics import CACHE_LOOKUPS_TOTAL

DEFAULT_TTL_SECONDS = 5 * 60


class RecordCache:
    """Holds one catalogue snapshot until it expires or is invalidated."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: list[FailureMode] | None = None
        self._timestamp = 0.0

    def is_valid(self) -> bool:
        valid = self._records is not None and self._clock() - self._timestamp < self.ttl_seconds
        CACHE_LOOKUPS_TOTAL.labels(result="hit" if valid else "miss").inc()
        return valid

    @property
    def records(self) -> list[FailureMode]:
        return list(self._records or [])

    def set(self, records: list[FailureMode]) -> None:
        self._records = list(records)
        self._timestamp = self._clock()

    def invalidate(self) -> None:
        self._records = None
        self._timestamp = 0.0
