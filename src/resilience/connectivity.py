"""Connectivity signal, reconnect waiting and periodic reachability probe.

The monitor holds a boolean "online" signal. It can be driven manually with
``set_online`` or by ``probe()``, which issues a lightweight request to the
backend and treats any HTTP response as reachable. ``start_probing`` runs the
probe on an APScheduler interval job.

Subscriptions return a handle whose ``cancel()`` removes the callback, so
abandoned waits never leave a registered listener behind.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from src.observability.metrics import CONNECTIVITY_ONLINE

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5.0

OnlineCallback = Callable[[], None]


class Subscription:
    """Handle for a registered "became online" callback."""

    def __init__(self, monitor: "ConnectivityMonitor", callback: OnlineCallback) -> None:
        self._monitor = monitor
        self._callback = callback
        self.active = True

    def cancel(self) -> None:
        """Unregister the callback. Safe to call more than once."""
        if self.active:
            self._monitor._unsubscribe(self._callback)
            self.active = False


class ConnectivityMonitor:
    """Tracks whether the backend is reachable and notifies on reconnect."""

    def __init__(
        self,
        probe_url: str = "",
        *,
        online: bool = True,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.probe_url = probe_url
        self._headers = headers or {}
        self._online = online
        self._callbacks: list[OnlineCallback] = []
        self._scheduler: AsyncIOScheduler | None = None
        CONNECTIVITY_ONLINE.set(1.0 if online else 0.0)

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Update the signal; an offline→online transition notifies subscribers."""
        was_online = self._online
        self._online = online
        CONNECTIVITY_ONLINE.set(1.0 if online else 0.0)

        if online and not was_online:
            logger.info("Connectivity restored")
            # Copy: callbacks may cancel their own subscription while we iterate.
            for callback in list(self._callbacks):
                try:
                    callback()
                except Exception:
                    logger.warning("Online callback raised", exc_info=True)
        elif was_online and not online:
            logger.warning("Connectivity lost; offline store will be used where available")

    def subscribe(self, callback: OnlineCallback) -> Subscription:
        """Register ``callback`` to run on every transition to online."""
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _unsubscribe(self, callback: OnlineCallback) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    async def wait_for_online(self) -> None:
        """Return once the signal is online. Resolves immediately if already online."""
        if self._online:
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _resolve() -> None:
            if not future.done():
                future.set_result(None)

        subscription = self.subscribe(_resolve)
        try:
            await future
        finally:
            subscription.cancel()

    async def probe(self) -> bool:
        """Check backend reachability and update the signal.

        Any HTTP response (even an error status) means the network path works.
        Transport errors and timeouts mean offline.
        """
        if not self.probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT_SECONDS) as client:
                _ = await client.get(self.probe_url, headers=self._headers)
            online = True
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            online = False
        self.set_online(online)
        return online

    def start_probing(self, interval_seconds: float) -> None:
        """Run ``probe()`` every ``interval_seconds``. No-op if the interval is 0."""
        if interval_seconds <= 0:
            logger.info("Connectivity probe disabled (interval not set)")
            return
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.probe,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id="connectivity_probe",
            name="Backend connectivity probe",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Connectivity probe started every %.1fs", interval_seconds)

    def stop_probing(self) -> None:
        """Shut down the probe scheduler if it is running."""
        if self._scheduler is not None:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            logger.info("Connectivity probe stopped")
            self._scheduler = None


async def sync_when_online(
    monitor: ConnectivityMonitor,
    callback: Callable[[], Awaitable[None]],
) -> None:
    """Run ``callback`` now if online, otherwise after connectivity returns.

    When deferred, a failing callback is logged rather than raised since no
    caller is left to handle it.
    """
    if monitor.is_online():
        await callback()
        return

    await monitor.wait_for_online()
    try:
        await callback()
    except Exception:
        logger.warning("Failed to sync when coming online", exc_info=True)
