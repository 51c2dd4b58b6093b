"""Tests for the active flag snapshot cache."""

import threading
import time
from dataclasses import replace
from unittest.mock import Mock

import pytest
from experiments_core.core.errors import StoreError
from experiments_core.models.flag import FeatureFlag, FlagStatus, FlagType
from experiments_core.services.flag_cache import FlagCache


def _flag(key, status=FlagStatus.ACTIVE):
    return FeatureFlag(id=f"id-{key}", key=key, name=key, flag_type=FlagType.BOOLEAN, status=status, enabled=True)


@pytest.fixture
def flag_store(store):
    store.create_flag(_flag("pool_rides"))
    store.create_flag(_flag("dark_mode"))
    store.create_flag(_flag("legacy_pricing", status=FlagStatus.INACTIVE))
    return Mock(wraps=store)


@pytest.fixture
def cache(flag_store, timer):
    return FlagCache(flag_store, ttl_seconds=30.0, timer=timer)


class TestReload:
    """Tests for reload behavior."""

    def test_first_read_reloads_once(self, cache, flag_store):
        """Test the first read triggers exactly one full reload."""
        assert cache.get("pool_rides").key == "pool_rides"
        assert flag_store.list_active_flags.call_count == 1

    def test_reads_within_ttl_do_not_reload(self, cache, flag_store, timer):
        """Test reads inside the TTL are served from memory."""
        cache.get("pool_rides")
        for _ in range(5):
            timer.advance(5)
            assert cache.get("dark_mode") is not None
        assert flag_store.list_active_flags.call_count == 1

    def test_stale_snapshot_reloads(self, cache, flag_store, timer):
        """Test a read after the TTL reloads the snapshot."""
        cache.get("pool_rides")
        timer.advance(30)
        cache.get("pool_rides")
        assert flag_store.list_active_flags.call_count == 2

    def test_reload_picks_up_new_flags(self, cache, store, timer):
        """Test flags created in the store appear after the TTL."""
        assert cache.get("surge_banner") is None
        store.create_flag(_flag("surge_banner"))
        assert cache.get("surge_banner") is None
        timer.advance(31)
        assert cache.get("surge_banner") is not None

    def test_last_refresh_recorded(self, cache, timer):
        """Test the refresh timestamp follows the timer."""
        assert cache.last_refresh is None
        cache.get("pool_rides")
        assert cache.last_refresh == timer.now


class TestAbsentKeys:
    """Tests for keys missing from the snapshot."""

    def test_absent_key_is_not_forwarded(self, cache, flag_store):
        """Test a fresh snapshot's absence is authoritative."""
        assert cache.get("does_not_exist") is None
        assert flag_store.get_flag_by_key.call_count == 0

    def test_inactive_flag_not_in_snapshot(self, cache):
        """Test only active flags are cached."""
        assert cache.get("legacy_pricing") is None


class TestInvalidate:
    """Tests for invalidation."""

    def test_invalidate_forces_one_reload(self, cache, flag_store):
        """Test the read after an invalidation reloads exactly once."""
        cache.get("pool_rides")
        cache.invalidate()
        cache.get("pool_rides")
        cache.get("dark_mode")
        assert flag_store.list_active_flags.call_count == 2

    def test_invalidate_clears_last_refresh(self, cache):
        """Test invalidation resets the refresh timestamp."""
        cache.get("pool_rides")
        cache.invalidate()
        assert cache.last_refresh is None


class TestReloadFailure:
    """Tests for store failures during reload."""

    def test_falls_back_to_single_key_lookup(self, cache, flag_store):
        """Test a failed reload falls back to a direct lookup."""
        flag_store.list_active_flags.side_effect = StoreError("database unavailable")
        flag = cache.get("pool_rides")
        assert flag.key == "pool_rides"
        flag_store.get_flag_by_key.assert_called_once_with("pool_rides")

    def test_failed_reload_retried_on_next_read(self, cache, flag_store):
        """Test a failed reload does not cache an empty snapshot."""
        flag_store.list_active_flags.side_effect = StoreError("database unavailable")
        cache.get("pool_rides")
        flag_store.list_active_flags.side_effect = None
        cache.get("pool_rides")
        assert flag_store.list_active_flags.call_count == 2
        assert cache.last_refresh is not None

    def test_fallback_failure_propagates(self, cache, flag_store):
        """Test the error surfaces when both reload and lookup fail."""
        flag_store.list_active_flags.side_effect = StoreError("database unavailable")
        flag_store.get_flag_by_key.side_effect = StoreError("database unavailable")
        with pytest.raises(StoreError):
            cache.get("pool_rides")

    def test_refresh_raises(self, cache, flag_store):
        """Test an explicit refresh reports the store error."""
        flag_store.list_active_flags.side_effect = StoreError("database unavailable")
        with pytest.raises(StoreError):
            cache.refresh()


class TestConcurrency:
    """Tests for concurrent readers."""

    def test_concurrent_first_reads_reload_once(self, store):
        """Test many threads hitting a cold cache trigger one reload."""
        store.create_flag(_flag("pool_rides"))
        calls = []
        original = store.list_active_flags

        def slow_list_active_flags():
            calls.append(1)
            time.sleep(0.05)
            return original()

        store.list_active_flags = slow_list_active_flags
        cache = FlagCache(store, ttl_seconds=30.0)

        results = []
        barrier = threading.Barrier(8)

        def reader():
            barrier.wait()
            results.append(cache.get("pool_rides"))

        threads = [threading.Thread(target=reader) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert all(flag is not None and flag.key == "pool_rides" for flag in results)

    def test_invalidate_during_reload_is_not_lost(self, store):
        """Test a reload that started before an invalidate does not cache stale flags."""
        store.create_flag(replace(_flag("pool_rides"), enabled=False))
        reload_started = threading.Event()
        release_reload = threading.Event()
        original = store.list_active_flags

        def blocking_list_active_flags():
            flags = original()
            reload_started.set()
            release_reload.wait(timeout=5)
            return flags

        store.list_active_flags = blocking_list_active_flags
        cache = FlagCache(store, ttl_seconds=30.0)

        reader = threading.Thread(target=cache.get, args=("pool_rides",))
        reader.start()
        assert reload_started.wait(timeout=5)

        store.update_flag(replace(store.get_flag_by_key("pool_rides"), enabled=True))
        cache.invalidate()
        release_reload.set()
        reader.join()

        store.list_active_flags = original
        assert cache.get("pool_rides").enabled is True

    def test_reload_after_invalidate_is_cached(self, cache, flag_store):
        """Test a reload started after an invalidate installs its snapshot."""
        cache.refresh()
        cache.invalidate()
        cache.refresh()
        cache.get("pool_rides")
        assert flag_store.list_active_flags.call_count == 2

    def test_snapshot_is_read_only(self, cache):
        """Test the cached mapping cannot be mutated in place."""
        snapshot = cache.refresh()
        with pytest.raises(TypeError):
            snapshot["injected"] = _flag("injected")
