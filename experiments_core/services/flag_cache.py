"""Snapshot cache of active feature flags.

The cache holds one immutable mapping of flag key to flag, built from
``store.list_active_flags()`` and kept for a fixed TTL. Within the TTL a key
missing from the snapshot means the flag does not exist (or is not active);
the store is not consulted. Once the TTL lapses the next read reloads the
whole snapshot. A reload that fails falls back to a single-key store lookup.

Each instance's view is TTL-bounded, not read-after-write consistent with
other instances.
"""

from __future__ import annotations

import threading
import time
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from cachetools import TTLCache

from experiments_core.core.config import settings
from experiments_core.core.errors import StoreError
from experiments_core.core.logging import get_logger
from experiments_core.core.metrics import flag_cache_invalidations_total, flag_cache_reloads_total
from experiments_core.models.flag import FeatureFlag
from experiments_core.store.base import ExperimentsStore

logger = get_logger(__name__)

_SNAPSHOT_KEY = "active_flags"


class FlagCache:
    """TTL-bounded snapshot of active flags.

    Args:
        store: Flag store
        ttl_seconds: Snapshot lifetime (defaults to settings.FLAG_CACHE_TTL_SECONDS)
        timer: Monotonic clock used for TTL expiry (injectable for tests)
    """

    def __init__(
        self,
        store: ExperimentsStore,
        ttl_seconds: Optional[float] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl_seconds = settings.FLAG_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._timer = timer
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=self.ttl_seconds, timer=timer)
        self._lock = threading.RLock()
        # Serializes reloads so concurrent stale readers trigger one reload
        self._refresh_lock = threading.Lock()
        self._last_refresh: Optional[float] = None
        # Bumped by invalidate(); a reload started under an older generation is not cached
        self._generation = 0

    @property
    def last_refresh(self) -> Optional[float]:
        """Timer value of the last successful reload, if any."""
        return self._last_refresh

    def get(self, key: str) -> Optional[FeatureFlag]:
        """Get an active flag by key.

        Raises:
            StoreError: Only when both the reload and the fallback lookup fail
        """
        snapshot = self._snapshot()
        if snapshot is not None:
            flag = snapshot.get(key)
            logger.debug("flag_cache_hit" if flag else "flag_cache_absent", key=key)
            return flag

        with self._refresh_lock:
            snapshot = self._snapshot()
            if snapshot is None:
                try:
                    snapshot = self.refresh()
                except StoreError:
                    snapshot = None

        if snapshot is not None:
            return snapshot.get(key)

        logger.warning("flag_cache_fallback_lookup", key=key)
        return self.store.get_flag_by_key(key)

    def refresh(self) -> Mapping[str, FeatureFlag]:
        """Reload every active flag and swap in the new snapshot.

        Raises:
            StoreError: If the store cannot list active flags; the previous
                snapshot (if still valid) is left in place
        """
        with self._lock:
            generation = self._generation

        try:
            flags = self.store.list_active_flags()
        except StoreError as e:
            flag_cache_reloads_total.labels(result="error").inc()
            logger.warning("flag_cache_reload_failed", error=str(e))
            raise

        snapshot = MappingProxyType({flag.key: flag for flag in flags})
        with self._lock:
            if generation != self._generation:
                logger.debug("flag_cache_reload_superseded", flag_count=len(snapshot))
                return snapshot
            self._cache[_SNAPSHOT_KEY] = snapshot
            self._last_refresh = self._timer()

        flag_cache_reloads_total.labels(result="success").inc()
        logger.debug("flag_cache_reloaded", flag_count=len(snapshot))
        return snapshot

    def invalidate(self) -> None:
        """Drop the snapshot so the next read reloads."""
        with self._lock:
            self._generation += 1
            self._cache.clear()
            self._last_refresh = None
        flag_cache_invalidations_total.inc()
        logger.debug("flag_cache_invalidated")

    def _snapshot(self) -> Optional[Mapping[str, FeatureFlag]]:
        with self._lock:
            return self._cache.get(_SNAPSHOT_KEY)
