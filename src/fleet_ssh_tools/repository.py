"""Persistence, credential and event collaborators.

The fleet subsystem only talks to storage through these protocols. The
``InMemory*`` implementations back the CLI and the test suite.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import Event, KnownHostFingerprint, MetricsSnapshot, TargetRecord

logger = logging.getLogger("fleet_ssh_tools.repository")


class TargetRepository(Protocol):
    def get(self, target_id: str) -> Optional[TargetRecord]: ...

    def list_metrics_enabled(self) -> List[TargetRecord]: ...

    def set_metrics_enabled(
        self, target_id: str, enabled: bool, interval_seconds: Optional[int] = None
    ) -> None: ...

    def save_fingerprints(
        self, target_id: str, fingerprints: Sequence[KnownHostFingerprint]
    ) -> None: ...


class MetricsRepository(Protocol):
    def save_snapshot(self, snapshot: MetricsSnapshot) -> None: ...

    def latest_snapshot(self, target_id: str) -> Optional[MetricsSnapshot]: ...

    def save_test_result(self, target_id: str, result: Any) -> None: ...


class EventSink(Protocol):
    def record(self, event: Event) -> None: ...


class Decryptor(Protocol):
    def decrypt(self, ciphertext: str) -> str: ...


class InMemoryTargetRepository:
    """Thread-safe dict-backed target store. Returned records are copies."""

    def __init__(self, targets: Optional[Sequence[TargetRecord]] = None) -> None:
        self._lock = threading.Lock()
        self._targets: Dict[str, TargetRecord] = {}
        for target in targets or ():
            self.add(target)

    def add(self, target: TargetRecord) -> None:
        with self._lock:
            self._targets[target.id] = copy.deepcopy(target)

    def delete(self, target_id: str) -> None:
        with self._lock:
            self._targets.pop(target_id, None)

    def update(self, target_id: str, **changes: Any) -> None:
        with self._lock:
            current = self._targets[target_id]
            self._targets[target_id] = dataclasses.replace(current, **changes)

    def get(self, target_id: str) -> Optional[TargetRecord]:
        with self._lock:
            target = self._targets.get(target_id)
            return copy.deepcopy(target) if target is not None else None

    def all(self) -> List[TargetRecord]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._targets.values()]

    def list_metrics_enabled(self) -> List[TargetRecord]:
        return [t for t in self.all() if t.metrics_enabled]

    def set_metrics_enabled(
        self, target_id: str, enabled: bool, interval_seconds: Optional[int] = None
    ) -> None:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                logger.warning("[REPO] set_metrics_enabled on unknown target %s", target_id)
                return
            target.metrics_enabled = enabled
            if interval_seconds is not None:
                target.metrics_interval_seconds = interval_seconds

    def save_fingerprints(
        self, target_id: str, fingerprints: Sequence[KnownHostFingerprint]
    ) -> None:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                logger.warning("[REPO] save_fingerprints on unknown target %s", target_id)
                return
            target.known_fingerprints = list(fingerprints)


class InMemoryMetricsRepository:
    """Keeps every snapshot and the last connection-test result per target."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.snapshots: List[MetricsSnapshot] = []
        self.test_results: Dict[str, Any] = {}

    def save_snapshot(self, snapshot: MetricsSnapshot) -> None:
        with self._lock:
            self.snapshots.append(snapshot)

    def latest_snapshot(self, target_id: str) -> Optional[MetricsSnapshot]:
        with self._lock:
            for snapshot in reversed(self.snapshots):
                if snapshot.target_id == target_id and snapshot.collection_success:
                    return snapshot
        return None

    def snapshots_for(self, target_id: str) -> List[MetricsSnapshot]:
        with self._lock:
            return [s for s in self.snapshots if s.target_id == target_id]

    def save_test_result(self, target_id: str, result: Any) -> None:
        with self._lock:
            self.test_results[target_id] = result


class InMemoryEventSink:
    """Collects events in a list and mirrors them to the log."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Event] = []

    def record(self, event: Event) -> None:
        logger.info(
            "[EVENT] %s %s target=%s — %s",
            event.severity.value, event.kind, event.target_id, event.description,
        )
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: str) -> List[Event]:
        with self._lock:
            return [e for e in self.events if e.kind == kind]


class PlaintextDecryptor:
    """Identity decryptor for credentials that are stored unencrypted (CLI, tests)."""

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext
