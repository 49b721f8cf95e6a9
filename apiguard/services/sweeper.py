"""
CacheSweeper - removes expired cache entries on a fixed period,
independent of request traffic.
"""

import asyncio
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from apiguard.services.cache import CacheStore


class CacheSweeper:
    """
    Interval job around CacheStore.sweep().

    Must be started from inside a running event loop; the job is a
    coroutine so it runs on the loop rather than in a worker thread.
    """

    JOB_ID = "cache_sweep"

    def __init__(self, cache: CacheStore, interval_seconds: float = 300.0):
        self.scheduler: AsyncIOScheduler | None = None
        self._cache = cache
        self._interval_seconds = interval_seconds
        self._is_running = False
        self._last_removed = 0
        self._runs = 0

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _sweep_job(self) -> None:
        removed = self._cache.sweep()
        self._runs += 1
        self._last_removed = removed
        if removed:
            logger.debug(f"Cache sweep removed {removed} expired entries")

    def start(self) -> None:
        """Start the periodic sweep."""
        if self._is_running:
            logger.warning("CacheSweeper is already running")
            return

        # Bound to the running loop so construction never needs one
        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.add_job(
            self._sweep_job,
            trigger="interval",
            seconds=self._interval_seconds,
            id=self.JOB_ID,
            name="Cache Expiry Sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"CacheSweeper started: every {self._interval_seconds}s")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running or self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("CacheSweeper stopped")

    def get_status(self) -> dict[str, Any]:
        """Get sweeper status."""
        next_run = None
        if self._is_running and self.scheduler is not None:
            job = self.scheduler.get_job(self.JOB_ID)
            if job and job.next_run_time:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self._is_running,
            "interval_seconds": self._interval_seconds,
            "runs": self._runs,
            "last_removed": self._last_removed,
            "next_run": next_run,
        }
