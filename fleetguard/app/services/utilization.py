"""Worker utilization sources and background polling.

The utilization shedder takes a sample per check; sampling the system
on every request would be too expensive, so a poller refreshes a cached
value at its own cadence and checks read the latest one.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import psutil

from fleetguard.app.core.config import settings
from fleetguard.app.core.logging import get_logger

logger = get_logger(__name__)


class UtilizationSource(ABC):
    """Produces a worker busy-ness sample on demand."""

    @abstractmethod
    def current_utilization(self) -> float:
        """Return utilization in [0, 1]."""


class StaticUtilizationSource(UtilizationSource):
    """Fixed utilization, settable at runtime."""

    def __init__(self, value: float = 0.0):
        self.value = value

    def current_utilization(self) -> float:
        return self.value


class CpuUtilizationSource(UtilizationSource):
    """System-wide CPU utilization via psutil.

    Uses the non-blocking form of cpu_percent, which reports usage since
    the previous call; the first call primes the counters.
    """

    def __init__(self):
        psutil.cpu_percent(interval=None)

    def current_utilization(self) -> float:
        return max(0.0, min(1.0, psutil.cpu_percent(interval=None) / 100.0))


class UtilizationPoller:
    """Samples a UtilizationSource periodically in a background task.

    Usage:
        poller = UtilizationPoller(CpuUtilizationSource())
        await poller.start()
        ...
        shedder.check(poller.latest)
        ...
        await poller.stop()
    """

    def __init__(
        self,
        source: UtilizationSource,
        interval: Optional[float] = None,
    ):
        self.source = source
        self.interval = interval if interval is not None else settings.utilization_poll_interval_seconds
        self.latest = 0.0
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    def poll(self) -> float:
        """Take one sample now, keeping the previous value on failure."""
        try:
            self.latest = self.source.current_utilization()
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning(f"Utilization sample failed, keeping {self.latest:.2f}: {e}")
        return self.latest

    async def start(self) -> None:
        """Start the background polling task."""
        if self._task is not None:
            return
        self._shutdown_event.clear()
        self.poll()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Started utilization poller (every {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background polling task."""
        if self._task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped utilization poller")

    async def _poll_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.interval,
                )
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            self.poll()
