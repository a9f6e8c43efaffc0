"""Periodic maintenance for the airline cache.

`CacheCleanupScheduler` runs `cleanup_airline_cache` as an APScheduler interval job
every few hours (6 by default) so codes seen once do not accumulate forever. The
sweep only deletes the keys it found expired; readers are never blocked for
longer than a single dict operation.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from airline_cache import AirlineCache, get_airline_cache
from config import load_config

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 6.0


def cleanup_airline_cache(cache: AirlineCache) -> int:
    """Sweep expired entries and log before/after stats. Returns entries removed."""
    try:
        before = cache.get_cache_stats()
        logger.info(f"Airline cache cleanup started: total={before['total']} expired={before['expired']}")

        removed = cache.cleanup_expired_entries()

        after = cache.get_cache_stats()
        logger.info(f"Airline cache cleanup completed: total={after['total']} by_source={after['by_source']}")
        if removed:
            logger.info(f"Cleaned up {removed} expired airline cache entries")
        return removed
    except Exception:
        # the next scheduled run retries
        logger.exception("Airline cache cleanup failed")
        return 0


class CacheCleanupScheduler:
    """Runs the airline cache sweep on a fixed interval."""

    def __init__(self, cache: AirlineCache, interval_hours: float = DEFAULT_INTERVAL_HOURS):
        if interval_hours <= 0:
            raise ValueError("interval_hours must be greater than 0")
        self.cache = cache
        self.interval_hours = interval_hours
        self._scheduler: Optional[BackgroundScheduler] = None
        self.runs = 0

    @classmethod
    def from_env(cls, cache: Optional[AirlineCache] = None) -> 'CacheCleanupScheduler':
        """Scheduler for `cache` (default: the shared one) at AIRLINE_CACHE_CLEANUP_HOURS."""
        cfg = load_config()
        return cls(cache if cache is not None else get_airline_cache(), interval_hours=cfg.cleanup_interval_hours)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> int:
        removed = cleanup_airline_cache(self.cache)
        self.runs += 1
        return removed

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            func=self.run_once,
            trigger="interval",
            hours=self.interval_hours,
            id="airline-cache-cleanup",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Airline cache cleanup initialized ({self.interval_hours:g}-hour interval)")

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
