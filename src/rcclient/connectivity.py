"""Connectivity monitor: the single source of truth for "are we online"."""

import asyncio
import contextlib
import time
from typing import Callable

import structlog

from .events import OFFLINE, ONLINE, EventBus

logger = structlog.get_logger(__name__)


class ConnectivityMonitor:
    """Debounced, edge-triggered online/offline state.

    Host signals arrive through ``report()``; a transition is committed only
    if the new state still holds after ``debounce`` seconds. An optional
    ``probe`` (e.g. ``RemoteApi.ping``) is polled every ``probe_interval``
    seconds once ``start()`` has been called.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        debounce: float = 1.0,
        probe: Callable[[], bool] | None = None,
        probe_interval: float = 15.0,
        initial: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._bus = bus
        self._debounce = debounce
        self._probe = probe
        self._probe_interval = probe_interval
        self._clock = clock
        self._online = initial
        self._offline_since: float | None = None if initial else clock()
        self._pending: asyncio.TimerHandle | None = None
        self._pending_value: bool | None = None
        self._probe_task: asyncio.Task | None = None

    @property
    def online(self) -> bool:
        return self._online

    def offline_for(self) -> float:
        """Seconds since the last committed offline transition (0 when online)."""
        if self._online or self._offline_since is None:
            return 0.0
        return self._clock() - self._offline_since

    def report(self, online: bool) -> None:
        """Host online/offline signal, applied after the debounce window."""
        if self._pending is not None and self._pending_value == online:
            return
        self._cancel_pending()
        if online == self._online:
            # Flapped back before the window closed
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if self._debounce <= 0 or loop is None:
            self._commit(online)
            return

        self._pending_value = online
        self._pending = loop.call_later(self._debounce, self._commit, online)

    def set_online(self, online: bool) -> None:
        """Commit a state immediately, bypassing the debounce."""
        self._cancel_pending()
        self._commit(online)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = None
        self._pending_value = None

    def _commit(self, online: bool) -> None:
        self._pending = None
        self._pending_value = None
        if online == self._online:
            return

        self._online = online
        self._offline_since = None if online else self._clock()
        logger.info("connectivity_changed", online=online)
        self._bus.publish(ONLINE if online else OFFLINE, {"online": online})

    async def check(self) -> bool:
        """Run the liveness probe once and report its result."""
        if self._probe is None:
            return self._online
        reachable = await asyncio.to_thread(self._probe)
        self.report(reachable)
        return reachable

    async def _probe_loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._probe_interval)

    def start(self) -> None:
        """Start periodic probing. Requires a running event loop."""
        if self._probe is not None and self._probe_task is None:
            self._probe_task = asyncio.get_running_loop().create_task(self._probe_loop())

    async def close(self) -> None:
        self._cancel_pending()
        if self._probe_task is not None:
            self._probe_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._probe_task
            self._probe_task = None
