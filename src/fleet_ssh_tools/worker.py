"""Queue job handler for metrics collection, with the failure circuit breaker."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Optional

from . import FAILURE_THRESHOLD
from .collector import MetricsCollector
from .exceptions import CircuitOpenError
from .failures import FailureTracker
from .models import Event, MetricsSnapshot, Severity
from .repository import EventSink, TargetRepository
from .scheduler import Job

logger = logging.getLogger("fleet_ssh_tools.worker")

SKIP_TARGET_NOT_FOUND = "Target not found"
SKIP_METRICS_DISABLED = "Metrics disabled"


@dataclasses.dataclass(frozen=True)
class JobOutcome:
    target_id: str
    skipped: bool = False
    reason: Optional[str] = None
    snapshot: Optional[MetricsSnapshot] = None


class MetricsJobProcessor:
    """Runs one collection per job and trips the breaker after repeated failures.

    At ``failure_threshold`` consecutive failures the target's metrics flag is
    cleared, its schedule removed and a non-retryable ``CircuitOpenError``
    raised. An operator must re-enable collection.
    """

    def __init__(
        self,
        targets: TargetRepository,
        collector: MetricsCollector,
        failures: FailureTracker,
        events: EventSink,
        unschedule: Callable[[str], Any],
        failure_threshold: int = FAILURE_THRESHOLD,
    ) -> None:
        self.targets = targets
        self.collector = collector
        self.failures = failures
        self.events = events
        self.unschedule = unschedule
        self.failure_threshold = failure_threshold

    def __call__(self, job: Job) -> JobOutcome:
        return self.process(job)

    def _skip(self, target_id: str, reason: str) -> JobOutcome:
        self.unschedule(target_id)
        logger.info("[WORKER] Skipping collection for target %s: %s", target_id, reason)
        return JobOutcome(target_id=target_id, skipped=True, reason=reason)

    def process(self, job: Job) -> JobOutcome:
        """Collect metrics for ``job.target_id``.

        Raises:
            CircuitOpenError: When this failure tripped the breaker
            Exception: The collection error, for the queue to retry
        """
        target_id = job.target_id
        target = self.targets.get(target_id)
        if target is None:
            return self._skip(target_id, SKIP_TARGET_NOT_FOUND)
        if not target.metrics_enabled:
            return self._skip(target_id, SKIP_METRICS_DISABLED)

        try:
            snapshot = self.collector.collect(target_id)
        except Exception as exc:
            if self.targets.get(target_id) is None:
                return self._skip(target_id, SKIP_TARGET_NOT_FOUND)

            count = self.failures.increment(target_id)
            logger.warning(
                "[WORKER] Collection failed for %s (%d/%d consecutive): %s",
                target.name, count, self.failure_threshold, exc,
            )
            if count >= self.failure_threshold:
                self._trip(target_id, target.name, count, exc)
            raise

        self.failures.reset(target_id)
        return JobOutcome(target_id=target_id, snapshot=snapshot)

    def _trip(self, target_id: str, name: str, count: int, cause: Exception) -> None:
        self.targets.set_metrics_enabled(target_id, False)
        self.unschedule(target_id)
        self.failures.reset(target_id)

        description = (
            f"Metrics collection auto-disabled for {name} after {count} consecutive failures. "
            f"Last error: {cause}"
        )
        logger.error("[WORKER] %s", description)
        self.events.record(
            Event(
                kind="METRICS_AUTO_DISABLED",
                severity=Severity.HIGH,
                target_id=target_id,
                description=description,
                metadata={"failure_count": count, "last_error": str(cause)},
            )
        )
        raise CircuitOpenError(description, target_id=target_id, failure_count=count) from cause
