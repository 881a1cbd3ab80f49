"""Failure-mode catalogue service with rate limiting, retries and offline fallback.

One ``FailureModeService`` is built per process (see ``build_service``) and
passed to its consumers. It owns the rate limiter, the in-memory catalogue
cache and the offline store, so tests can construct isolated instances.

Search flow:
    rate limit → offline? serve from local store
               → online: remote query under ``with_retry``
                   success → persist to local store (best effort)
                   failure → offline? local store : classified error
"""

import asyncio
import contextlib
import logging
from collections import Counter
from collections.abc import Awaitable, Callable

from src.config import Settings, get_settings
from src.failure_modes.cache import RecordCache
from src.failure_modes.models import (
    CUSTOM_TAG,
    FailureMode,
    FailureModeSearchParams,
    FailureModeStats,
    NewFailureMode,
    OfflineInfo,
)
from src.failure_modes.offline_store import LocalRecordStore
from src.failure_modes.remote import FailureModeTable
from src.observability.metrics import OFFLINE_FALLBACKS_TOTAL, RATE_LIMIT_REJECTIONS_TOTAL
from src.resilience.connectivity import ConnectivityMonitor, sync_when_online
from src.resilience.errors import RateLimitExceeded, SearchUnavailable, is_retryable
from src.resilience.rate_limiter import RateLimiter
from src.resilience.retry import SEARCH_RETRY, SUGGESTION_RETRY, RetryOptions, with_retry

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTION_LIMIT = 10


class FailureModeService:
    """Resilient access to the failure-mode catalogue."""

    def __init__(
        self,
        *,
        remote: FailureModeTable,
        offline_store: LocalRecordStore,
        rate_limiter: RateLimiter,
        connectivity: ConnectivityMonitor,
        cache: RecordCache,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.remote = remote
        self.offline_store = offline_store
        self.rate_limiter = rate_limiter
        self.connectivity = connectivity
        self.cache = cache
        self._sleep = sleep
        self._sync_task: asyncio.Task[None] | None = None

    # --- Helpers ---

    def _offline_supported(self) -> bool:
        return self.offline_store.is_supported()

    def _retry_options(self, profile: RetryOptions, label: str) -> RetryOptions:
        def _log_retry(attempt: int, error: Exception) -> None:
            logger.warning("%s retry attempt %d due to: %s", label, attempt, error)

        return profile.model_copy(update={"on_retry": _log_retry, "retry_if": is_retryable})

    async def _persist_best_effort(self, records: list[FailureMode]) -> None:
        if not self._offline_supported():
            return
        try:
            await self.offline_store.store_failure_modes(records)
        except Exception:
            logger.warning("Failed to cache results offline", exc_info=True)

    # --- Search ---

    async def search_failure_modes(self, params: FailureModeSearchParams | None = None) -> list[FailureMode]:
        """Search with category filter, text match and pagination.

        Raises:
            RateLimitExceeded: Too many identical searches in the current window.
            SearchUnavailable: Transient remote failure persisted through all retries.
            PermanentRemoteError: The backend rejected the query.
            StorageError: Offline search against the local store failed.
        """
        params = params or FailureModeSearchParams()
        identifier = params.identifier()

        if not self.rate_limiter.is_allowed(identifier):
            RATE_LIMIT_REJECTIONS_TOTAL.labels(operation="search").inc()
            raise RateLimitExceeded(
                self.rate_limiter.get_remaining_requests(identifier),
                self.rate_limiter.get_reset_time(identifier),
            )

        if not self.connectivity.is_online() and self._offline_supported():
            logger.info("Using offline storage for failure modes search")
            OFFLINE_FALLBACKS_TOTAL.labels(operation="search", reason="offline").inc()
            return await self.offline_store.search_failure_modes(params)

        try:
            results = await with_retry(
                lambda: self.remote.search(params),
                self._retry_options(SEARCH_RETRY, "Search"),
                sleep=self._sleep,
                operation="search",
            )
        except Exception as exc:
            if not self.connectivity.is_online() and self._offline_supported():
                try:
                    logger.info("Online search failed, falling back to offline storage")
                    OFFLINE_FALLBACKS_TOTAL.labels(operation="search", reason="remote_failed").inc()
                    return await self.offline_store.search_failure_modes(params)
                except Exception:
                    logger.error("Offline fallback also failed", exc_info=True)

            if is_retryable(exc):
                logger.error("Search failed after retries: %r", exc)
                raise SearchUnavailable() from exc

            logger.error("Error in search_failure_modes: %r", exc)
            raise

        await self._persist_best_effort(results)
        return results

    async def get_failure_mode_suggestions(
        self,
        query: str,
        limit: int = DEFAULT_SUGGESTION_LIMIT,
    ) -> list[FailureMode]:
        """Autocomplete suggestions. Never raises; failures yield an empty list."""
        try:
            if not query.strip():
                return await self.search_failure_modes(FailureModeSearchParams(limit=limit))

            if not self.rate_limiter.is_allowed(f"autocomplete-{query}"):
                RATE_LIMIT_REJECTIONS_TOTAL.labels(operation="suggest").inc()
                if self._offline_supported():
                    OFFLINE_FALLBACKS_TOTAL.labels(operation="suggest", reason="rate_limited").inc()
                    return await self.offline_store.search_failure_modes(
                        FailureModeSearchParams(search=query, limit=limit)
                    )
                # Rate-limited with no local store: empty result, no remote call.
                return []

            if not self.connectivity.is_online() and self._offline_supported():
                OFFLINE_FALLBACKS_TOTAL.labels(operation="suggest", reason="offline").inc()
                return await self.offline_store.search_failure_modes(
                    FailureModeSearchParams(search=query, limit=limit)
                )

            return await with_retry(
                lambda: self.remote.suggest(query, limit),
                self._retry_options(SUGGESTION_RETRY, "Autocomplete"),
                sleep=self._sleep,
                operation="suggest",
            )
        except Exception as exc:
            logger.warning("Autocomplete for %r failed: %r", query, exc)
            if self._offline_supported():
                try:
                    logger.info("Autocomplete falling back to offline storage")
                    OFFLINE_FALLBACKS_TOTAL.labels(operation="suggest", reason="remote_failed").inc()
                    return await self.offline_store.search_failure_modes(
                        FailureModeSearchParams(search=query or None, limit=limit)
                    )
                except Exception:
                    logger.error("Offline autocomplete fallback failed", exc_info=True)
            return []

    # --- Cached reads ---

    async def get_all_failure_modes(self) -> list[FailureMode]:
        """Full catalogue, served from the in-memory cache while it is fresh."""
        if self.cache.is_valid():
            return self.cache.records

        modes = await self.remote.list_all()
        self.cache.set(modes)
        return modes

    async def get_failure_modes_by_category(self, category: str) -> list[FailureMode]:
        if self.cache.is_valid():
            return [fm for fm in self.cache.records if fm["category"] == category]
        return await self.remote.list_by_category(category)

    async def get_failure_mode_categories(self) -> list[str]:
        if self.cache.is_valid():
            return sorted({fm["category"] for fm in self.cache.records})
        return await self.remote.list_categories()

    async def get_failure_mode_by_id(self, failure_mode_id: str) -> FailureMode | None:
        """Single lookup. Returns None when the id does not exist."""
        if self.cache.is_valid():
            for fm in self.cache.records:
                if fm["id"] == failure_mode_id:
                    return fm
        return await self.remote.get_by_id(failure_mode_id)

    async def get_failure_modes_by_tags(self, tags: list[str]) -> list[FailureMode]:
        """Records carrying at least one of ``tags``."""
        if not tags:
            return []
        return await self.remote.list_by_tags(tags)

    # --- Writes ---

    async def add_custom_failure_mode(self, failure_mode: NewFailureMode) -> FailureMode:
        """Insert a user-defined failure mode tagged "Custom" and drop the cache."""
        payload: dict[str, object] = failure_mode.model_dump()
        payload["tags"] = [*failure_mode.tags, CUSTOM_TAG]

        try:
            record = await self.remote.insert(payload)
        except Exception:
            logger.exception("Error adding custom failure mode")
            raise

        self.invalidate_cache()
        return record

    def invalidate_cache(self) -> None:
        self.cache.invalidate()

    # --- Offline maintenance ---

    async def _refresh_offline_store(self) -> None:
        modes = await self.get_all_failure_modes()
        await self.offline_store.store_failure_modes(modes)

    async def preload_failure_modes(self) -> None:
        """Warm the cache and refresh the offline store. Never raises.

        When offline, the refresh is deferred to a background task that waits
        for connectivity; ``close()`` cancels it.
        """
        try:
            if self._offline_supported():
                await self.offline_store.init()

            if not self.cache.is_valid():
                try:
                    await self.get_all_failure_modes()
                except Exception:
                    logger.warning("Failed to warm failure mode cache", exc_info=True)

            if not self._offline_supported():
                return

            if self.connectivity.is_online():
                await sync_when_online(self.connectivity, self._refresh_offline_store)
            elif self._sync_task is None or self._sync_task.done():
                logger.info("Offline: deferring offline store refresh until connectivity returns")
                self._sync_task = asyncio.create_task(
                    sync_when_online(self.connectivity, self._refresh_offline_store)
                )
        except Exception:
            logger.warning("Failed to preload failure modes", exc_info=True)

    @property
    def pending_sync(self) -> asyncio.Task[None] | None:
        """Deferred offline refresh task, if one is waiting."""
        return self._sync_task

    # --- Status ---

    async def get_failure_mode_stats(self) -> FailureModeStats:
        """Totals per category. Errors propagate unchanged."""
        modes = await self.get_all_failure_modes()
        categories = await self.get_failure_mode_categories()
        by_category = Counter(fm["category"] for fm in modes)
        return FailureModeStats(
            total_modes=len(modes),
            total_categories=len(categories),
            modes_by_category=dict(by_category),
        )

    def is_offline_mode(self) -> bool:
        return not self.connectivity.is_online() and self._offline_supported()

    async def get_offline_info(self) -> OfflineInfo:
        supported = self._offline_supported()
        if not supported:
            return OfflineInfo(supported=False, enabled=False)

        enabled = not self.connectivity.is_online()
        try:
            await self.offline_store.init()
            cached_count = await self.offline_store.count()
            last_sync = await self.offline_store.get_last_sync()
        except Exception:
            logger.warning("Failed to get offline info", exc_info=True)
            return OfflineInfo(supported=True, enabled=False)

        return OfflineInfo(supported=True, enabled=enabled, cached_count=cached_count, last_sync=last_sync)

    # --- Lifecycle ---

    async def close(self) -> None:
        """Cancel the deferred sync, stop probing and close the offline store."""
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sync_task
        self._sync_task = None
        self.connectivity.stop_probing()
        await self.offline_store.close()


def build_service(settings: Settings | None = None) -> FailureModeService:
    """Construct the process-wide service from settings."""
    settings = settings or get_settings()
    remote = FailureModeTable.from_settings(settings)
    return FailureModeService(
        remote=remote,
        offline_store=LocalRecordStore(settings.offline_db_path),
        rate_limiter=RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds),
        connectivity=ConnectivityMonitor(
            remote.rest_url,
            online=not settings.start_offline,
            headers=remote.auth_headers(),
        ),
        cache=RecordCache(settings.cache_ttl_seconds),
    )
