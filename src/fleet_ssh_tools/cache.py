"""In-process TTL caches for latest and aggregated metrics."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from . import AGGREGATED_METRICS_TTL, LATEST_METRICS_TTL
from .models import AggregatedMetrics, MetricsSnapshot
from .types import Clock

logger = logging.getLogger("fleet_ssh_tools.cache")

V = TypeVar("V")

_AGGREGATED_KEY = "metrics:aggregated"


class TTLStore(Generic[V]):
    """Thread-safe key/value store whose entries expire after a per-entry TTL."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[V, float]] = {}

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MetricsCache:
    """Latest snapshot per target (1 h) and the fleet-wide aggregate (60 s)."""

    def __init__(
        self,
        latest_ttl: float = LATEST_METRICS_TTL,
        aggregated_ttl: float = AGGREGATED_METRICS_TTL,
        clock: Clock = time.monotonic,
    ) -> None:
        self.latest_ttl = latest_ttl
        self.aggregated_ttl = aggregated_ttl
        self._store: TTLStore[Any] = TTLStore(clock=clock)

    @staticmethod
    def _latest_key(target_id: str) -> str:
        return f"metrics:latest:{target_id}"

    def set_latest(self, target_id: str, snapshot: MetricsSnapshot) -> None:
        self._store.set(self._latest_key(target_id), snapshot, self.latest_ttl)

    def get_latest(
        self,
        target_id: str,
        fallback: Optional[Callable[[str], Optional[MetricsSnapshot]]] = None,
    ) -> Optional[MetricsSnapshot]:
        """Cached snapshot, else *fallback(target_id)* (which refills the cache)."""
        snapshot = self._store.get(self._latest_key(target_id))
        if snapshot is not None:
            return snapshot

        if fallback is None:
            return None

        snapshot = fallback(target_id)
        if snapshot is not None:
            self.set_latest(target_id, snapshot)
        return snapshot

    def get_aggregated(self, loader: Callable[[], AggregatedMetrics]) -> AggregatedMetrics:
        aggregated = self._store.get(_AGGREGATED_KEY)
        if aggregated is not None:
            return aggregated

        aggregated = loader()
        self._store.set(_AGGREGATED_KEY, aggregated, self.aggregated_ttl)
        logger.debug("[CACHE] Aggregated metrics recomputed")
        return aggregated

    def invalidate_aggregated(self) -> None:
        self._store.delete(_AGGREGATED_KEY)

    def invalidate_latest(self, target_id: str) -> None:
        self._store.delete(self._latest_key(target_id))

    def clear(self) -> None:
        self._store.clear()
