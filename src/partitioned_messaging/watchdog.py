"""Periodic TTL sweep over in-flight and pending messages."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from .ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from datetime import timedelta

    from .tracker import DeliveryTracker

logger = logging.getLogger("partitioned_messaging.watchdog")


def default_interval(ttl: timedelta | None) -> float:
    """A quarter of the TTL, so a stuck message is expired at most 1.25 × TTL late."""
    if ttl is None:
        return 7.5
    return max(ttl.total_seconds() / 4, 0.01)


class ExpiryWatchdog(IBackgroundWorker):
    """Runs :meth:`DeliveryTracker.expire_due` every ``interval`` seconds.

    Consumers also expire lazily on dequeue and ack; the sweep covers messages
    that nobody touches (a hung handler, a stalled partition). Call
    :meth:`trigger` to sweep immediately.
    """

    def __init__(self, tracker: DeliveryTracker, interval: float = 7.5) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._tracker = tracker
        self._interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    @property
    def interval(self) -> float:
        return self._interval

    def trigger(self) -> None:
        self._trigger.set()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="expiry-watchdog")
        logger.info("ExpiryWatchdog started (interval=%.2fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        self._trigger.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None
        logger.info("ExpiryWatchdog stopped")

    async def run_once(self) -> int:
        """Execute a single sweep (useful in tests)."""
        entries = await self._tracker.expire_due()
        return len(entries)

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._trigger.wait(), timeout=self._interval)
            self._trigger.clear()
            try:
                await self._tracker.expire_due()
            except Exception:
                logger.exception("ExpiryWatchdog sweep failed")
