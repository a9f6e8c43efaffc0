import time
from unittest.mock import Mock

import pytest

from airline_cache import AirlineCache
from cache_cleanup import CacheCleanupScheduler, cleanup_airline_cache


class _Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


def test_cleanup_reports_removed_entries():
    clock = _Clock()
    cache = AirlineCache(clock=clock, bootstrap=[("AA", "American Airlines"), ("BA", "British Airways")])
    clock.now += 25 * 3600
    cache.get_airline("QQ")

    assert cleanup_airline_cache(cache) == 2
    assert [a.code for a in cache.get_all_cached_airlines()] == ["QQ"]


def test_cleanup_failure_is_logged_not_raised(caplog):
    cache = Mock()
    cache.get_cache_stats.return_value = {"total": 1, "expired": 1, "by_source": {}}
    cache.cleanup_expired_entries.side_effect = RuntimeError("boom")

    assert cleanup_airline_cache(cache) == 0
    assert any("cleanup failed" in r.getMessage() for r in caplog.records)


def test_run_once_counts_runs():
    scheduler = CacheCleanupScheduler(AirlineCache(bootstrap=()), interval_hours=6)

    scheduler.run_once()
    scheduler.run_once()

    assert scheduler.runs == 2
    assert not scheduler.running


def test_scheduler_sweeps_on_interval():
    scheduler = CacheCleanupScheduler(AirlineCache(bootstrap=()), interval_hours=0.1 / 3600)
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while scheduler.runs < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.runs >= 2
    finally:
        scheduler.stop()
    assert not scheduler.running


def test_scheduler_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        CacheCleanupScheduler(AirlineCache(bootstrap=()), interval_hours=0)


def test_scheduler_interval_comes_from_config(monkeypatch):
    import cache_cleanup
    from types import SimpleNamespace

    monkeypatch.setattr(cache_cleanup, "load_config", lambda: SimpleNamespace(cleanup_interval_hours=2.5))
    cache = AirlineCache(bootstrap=())

    scheduler = CacheCleanupScheduler.from_env(cache)

    assert scheduler.interval_hours == 2.5
    assert scheduler.cache is cache
    assert not scheduler.running


def test_scheduler_from_env_defaults_to_shared_cache(monkeypatch):
    import cache_cleanup
    from types import SimpleNamespace

    shared = AirlineCache(bootstrap=())
    monkeypatch.setattr(cache_cleanup, "load_config", lambda: SimpleNamespace(cleanup_interval_hours=6.0))
    monkeypatch.setattr(cache_cleanup, "get_airline_cache", lambda: shared)

    assert CacheCleanupScheduler.from_env().cache is shared
