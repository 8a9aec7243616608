"""Type definitions for Fleet SSH Tools."""

from typing import Any, Callable, Dict

# Time source returning seconds; time.monotonic in production, fakes in tests
Clock = Callable[[], float]

# Admin statistics payloads
PoolStats = Dict[str, Any]  # {"total_sessions": int, "active_sessions": int, ...}
QueueStats = Dict[str, Any]  # {"waiting": int, "active": int, ..., "repeatable_jobs": list}
