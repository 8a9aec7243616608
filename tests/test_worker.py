"""
MetricsJobProcessor test suite: skip reasons and the failure circuit breaker.

Run with full visibility:
    pytest tests/test_worker.py -v -s
"""

from __future__ import annotations

from typing import List, Optional

import pytest

from fleet_ssh_tools.exceptions import CircuitOpenError, SSHConnectionError
from fleet_ssh_tools.failures import FailureTracker
from fleet_ssh_tools.models import AuthMaterial, AuthMethod, MetricsSnapshot, Severity, TargetRecord, TriggerKind
from fleet_ssh_tools.repository import InMemoryEventSink, InMemoryTargetRepository
from fleet_ssh_tools.scheduler import SCHEDULED_PRIORITY, Job
from fleet_ssh_tools.worker import (
    SKIP_METRICS_DISABLED,
    SKIP_TARGET_NOT_FOUND,
    JobOutcome,
    MetricsJobProcessor,
)


def _report(label: str, detail: str = "") -> None:
    """Uniform test-level print."""
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


class FakeCollector:
    """Fails while ``error`` is set; optionally deletes the target first."""

    def __init__(self, targets: InMemoryTargetRepository) -> None:
        self.targets = targets
        self.error: Optional[Exception] = None
        self.delete_target = False
        self.calls: List[str] = []

    def collect(self, target_id: str) -> MetricsSnapshot:
        self.calls.append(target_id)
        if self.delete_target:
            self.targets.delete(target_id)
        if self.error is not None:
            raise self.error
        return MetricsSnapshot(target_id=target_id, cpu_usage_percent=1.0)


def _job(target_id: str = "t1") -> Job:
    return Job(target_id=target_id, trigger=TriggerKind.SCHEDULED, priority=SCHEDULED_PRIORITY, max_attempts=3)


@pytest.fixture
def env():
    targets = InMemoryTargetRepository([
        TargetRecord(
            id="t1",
            name="app-server",
            host="10.0.0.9",
            username="ops",
            auth_method=AuthMethod.PASSWORD,
            auth_material=AuthMaterial(encrypted_password="pw"),
            metrics_enabled=True,
        )
    ])
    collector = FakeCollector(targets)
    failures = FailureTracker()
    events = InMemoryEventSink()
    unscheduled: List[str] = []
    processor = MetricsJobProcessor(
        targets, collector, failures, events, unschedule=unscheduled.append, failure_threshold=10
    )
    return targets, collector, failures, events, unscheduled, processor


class TestSkips:
    def test_missing_target(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        outcome = processor(_job("ghost"))
        _report("ASSERT", f"skipped → {outcome}")
        assert outcome == JobOutcome(target_id="ghost", skipped=True, reason=SKIP_TARGET_NOT_FOUND)
        assert unscheduled == ["ghost"]
        assert collector.calls == []

    def test_metrics_disabled(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        targets.set_metrics_enabled("t1", False)
        outcome = processor(_job())
        assert outcome.skipped
        assert outcome.reason == SKIP_METRICS_DISABLED
        assert unscheduled == ["t1"]

    def test_deleted_during_collection(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        collector.delete_target = True
        collector.error = SSHConnectionError("connection reset")
        outcome = processor(_job())
        assert outcome.reason == SKIP_TARGET_NOT_FOUND
        assert failures.get("t1") == 0


class TestCircuitBreaker:
    def test_failure_reraised_and_counted(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        collector.error = SSHConnectionError("refused")
        with pytest.raises(SSHConnectionError):
            processor(_job())
        assert failures.get("t1") == 1
        assert targets.get("t1").metrics_enabled

    def test_success_resets_counter(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        collector.error = SSHConnectionError("refused")
        for _ in range(5):
            with pytest.raises(SSHConnectionError):
                processor(_job())
        collector.error = None
        outcome = processor(_job())
        _report("ASSERT", f"counter reset after success → {failures.get('t1')}")
        assert outcome.snapshot is not None
        assert failures.get("t1") == 0

    def test_trips_at_threshold(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        cause = SSHConnectionError("Connection refused")
        collector.error = cause
        for _ in range(9):
            with pytest.raises(SSHConnectionError):
                processor(_job())
        assert targets.get("t1").metrics_enabled
        assert unscheduled == []

        with pytest.raises(CircuitOpenError) as exc_info:
            processor(_job())

        err = exc_info.value
        _report("ASSERT", f"breaker open → {err}")
        assert err.failure_count == 10
        assert err.retryable is False
        assert err.__cause__ is cause
        assert not targets.get("t1").metrics_enabled
        assert unscheduled == ["t1"]
        assert failures.get("t1") == 0

        [event] = events.of_kind("METRICS_AUTO_DISABLED")
        assert event.severity is Severity.HIGH
        assert event.metadata["failure_count"] == 10
        assert "app-server" in event.description
        assert "Connection refused" in event.description

    def test_disabled_after_trip_skips(self, env) -> None:
        targets, collector, failures, events, unscheduled, processor = env
        collector.error = SSHConnectionError("refused")
        for _ in range(9):
            with pytest.raises(SSHConnectionError):
                processor(_job())
        with pytest.raises(CircuitOpenError):
            processor(_job())

        outcome = processor(_job())
        assert outcome.reason == SKIP_METRICS_DISABLED
        assert len(collector.calls) == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
