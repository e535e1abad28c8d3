import asyncio
import logging
from typing import Optional

from .config import metering_config
from .job import HourlyMeteringJob

logger = logging.getLogger(__name__)


class MeteringScheduler:
    """Runs the metering job on a fixed interval, one tick at a time.

    When an interval elapses while the previous tick is still running the
    new tick is dropped, not queued. Ticks are never cancelled midway:
    ``stop`` waits for the one in flight.
    """

    def __init__(self, job: HourlyMeteringJob, interval_seconds: Optional[float] = None):
        self.job = job
        self.interval_seconds = interval_seconds or metering_config.interval_seconds
        self.skipped_ticks = 0
        self._running = False
        self._in_flight = False
        self._current: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def busy(self) -> bool:
        return self._in_flight

    def trigger(self) -> bool:
        if self._in_flight:
            self.skipped_ticks += 1
            logger.warning("Previous metering tick still running, skipping this interval")
            return False
        self._in_flight = True
        self._current = asyncio.create_task(self._run_tick())
        return True

    async def _run_tick(self):
        try:
            await self.job.run_tick()
        except Exception as e:
            logger.error(f"Metering tick failed: {e}")
        finally:
            self._in_flight = False

    async def start(self):
        self._running = True
        self._stop_event.clear()
        logger.info(f"Metering scheduler started, interval {self.interval_seconds}s")

        while self._running:
            self.trigger()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def stop(self):
        self._running = False
        self._stop_event.set()
        if self._current and not self._current.done():
            logger.info("Waiting for the running metering tick to finish...")
            await self._current
        logger.info("Metering scheduler stopped")
