"""Consecutive-failure counters backing the collection circuit breaker."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Tuple

from . import FAILURE_COUNT_TTL
from .types import Clock

logger = logging.getLogger("fleet_ssh_tools.failures")


class FailureTracker:
    """Per-target failure counter; each increment refreshes a sliding TTL.

    A counter not incremented for ``ttl`` seconds silently restarts at zero.
    """

    def __init__(self, ttl: float = FAILURE_COUNT_TTL, clock: Clock = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: Dict[str, Tuple[int, float]] = {}

    def _current(self, target_id: str, now: float) -> int:
        entry = self._counts.get(target_id)
        if entry is None:
            return 0
        count, expires_at = entry
        if expires_at <= now:
            del self._counts[target_id]
            return 0
        return count

    def increment(self, target_id: str) -> int:
        """Add one failure and return the new count."""
        now = self._clock()
        with self._lock:
            count = self._current(target_id, now) + 1
            self._counts[target_id] = (count, now + self.ttl)
        logger.debug("[FAILURES] target %s failure count now %d", target_id, count)
        return count

    def reset(self, target_id: str) -> None:
        with self._lock:
            self._counts.pop(target_id, None)

    def get(self, target_id: str) -> int:
        with self._lock:
            return self._current(target_id, self._clock())
