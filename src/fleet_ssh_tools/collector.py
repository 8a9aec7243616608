"""Batched Linux metrics collection, parsing, threshold alerts and aggregation."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, TypeVar

from typeguard import typechecked

from . import COMMAND_TIMEOUT
from .cache import MetricsCache
from .exceptions import SSHCommandError, TargetGoneError, UnsupportedPlatformError
from .manager import SessionManager
from .models import (
    AggregatedMetrics,
    Event,
    MetricsSnapshot,
    PlatformType,
    Severity,
    TargetRecord,
)
from .repository import EventSink, MetricsRepository, TargetRepository

logger = logging.getLogger("fleet_ssh_tools.collector")

N = TypeVar("N", int, float)

# One line per field, in this exact order; parse_linux_metrics reads them by position.
METRICS_SCRIPT = "\n".join(
    (
        r"""top -bn1 | grep "Cpu(s)" | sed "s/.*, *\([0-9.]*\)%* id.*/\1/" | awk '{print 100 - $1}'""",
        r"""nproc""",
        r"""awk '{print $1, $2, $3}' /proc/loadavg""",
        r"""free -m | awk 'NR==2{printf "%s %s %s %s\n", $2, $3, $4, $7}'""",
        r"""free -m | awk 'NR==3{printf "%s %s\n", $2, $3}'""",
        r"""df -BM -x tmpfs -x devtmpfs | awk 'NR>1 {total+=$2; used+=$3; avail+=$4} END {printf "%d %d %d %.1f\n", total, used, avail, (total > 0 ? used/total*100 : 0)}'""",
        r"""awk '{print int($1)}' /proc/uptime""",
        r"""ps -e --no-headers | wc -l""",
        r"""grep PRETTY_NAME /etc/os-release | cut -d'"' -f2""",
        r"""uname -r""",
        r"""awk 'NR>2 {rx+=$2; tx+=$10} END {printf "%d %d\n", rx, tx}' /proc/net/dev""",
    )
)

_MB = 1024 * 1024


def _number(text: str, kind: Callable[[str], N]) -> N:
    try:
        return kind(text)
    except (TypeError, ValueError):
        return kind("0")


def _field(parts: List[str], index: int) -> str:
    return parts[index] if index < len(parts) else ""


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


@typechecked
def parse_linux_metrics(target_id: str, output: str) -> MetricsSnapshot:
    """Parse the 11-line output of ``METRICS_SCRIPT`` into a snapshot.

    Lines are read by position. Any value that fails to parse becomes 0 and
    missing trailing lines leave their fields at their defaults.
    """
    lines = [line.strip() for line in output.strip("\n").split("\n")]
    lines += [""] * (11 - len(lines))

    load = lines[2].split()
    memory = lines[3].split()
    swap = lines[4].split()
    disk = lines[5].split()
    network = lines[10].split()

    memory_total = _number(_field(memory, 0), int)
    memory_used = _number(_field(memory, 1), int)
    swap_total = _number(_field(swap, 0), int)
    swap_used = _number(_field(swap, 1), int)
    disk_total_mb = _number(_field(disk, 0), float)
    disk_used_mb = _number(_field(disk, 1), float)
    disk_free_mb = _number(_field(disk, 2), float)

    return MetricsSnapshot(
        target_id=target_id,
        cpu_usage_percent=round(_number(lines[0], float), 2),
        cpu_cores=_number(lines[1], int),
        load_average_1m=_number(_field(load, 0), float),
        load_average_5m=_number(_field(load, 1), float),
        load_average_15m=_number(_field(load, 2), float),
        memory_total_mb=memory_total,
        memory_used_mb=memory_used,
        memory_free_mb=_number(_field(memory, 2), int),
        memory_available_mb=_number(_field(memory, 3), int),
        memory_usage_percent=_percent(memory_used, memory_total),
        swap_total_mb=swap_total,
        swap_used_mb=swap_used,
        swap_usage_percent=_percent(swap_used, swap_total),
        disk_total_gb=round(disk_total_mb / 1024, 2),
        disk_used_gb=round(disk_used_mb / 1024, 2),
        disk_free_gb=round(disk_free_mb / 1024, 2),
        disk_usage_percent=_number(_field(disk, 3), float),
        uptime_seconds=_number(lines[6], int),
        process_count=_number(lines[7], int),
        detected_os=lines[8] or None,
        kernel_version=lines[9] or None,
        network_rx_total_mb=round(_number(_field(network, 0), int) / _MB, 2),
        network_tx_total_mb=round(_number(_field(network, 1), int) / _MB, 2),
    )


def threshold_alerts(target: TargetRecord, snapshot: MetricsSnapshot) -> List[str]:
    """Human-readable breaches of *target*'s alert thresholds (inclusive)."""
    checks = (
        ("CPU", snapshot.cpu_usage_percent, target.alert_cpu_threshold),
        ("Memory", snapshot.memory_usage_percent, target.alert_ram_threshold),
        ("Disk", snapshot.disk_usage_percent, target.alert_disk_threshold),
    )
    return [
        f"{label} usage ({value}%) exceeded threshold ({threshold}%)"
        for label, value, threshold in checks
        if value >= threshold
    ]


class MetricsCollector:
    """Collects, persists and caches metrics snapshots for targets."""

    def __init__(
        self,
        targets: TargetRepository,
        metrics: MetricsRepository,
        sessions: SessionManager,
        cache: MetricsCache,
        events: EventSink,
        command_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.targets = targets
        self.metrics = metrics
        self.sessions = sessions
        self.cache = cache
        self.events = events
        self.command_timeout = command_timeout

    def collect(self, target_id: str) -> MetricsSnapshot:
        """Collect one snapshot from *target_id*.

        On failure a zeroed, unsuccessful snapshot is persisted before the
        error is re-raised, unless the target has been deleted meanwhile.

        Raises:
            TargetGoneError: If the target does not exist
            UnsupportedPlatformError: If the target is not a Linux host
            SSHCommandError: If the metrics script fails
            SSHConnectionError: If no session could be opened
            PoolExhaustedError: If no session could be borrowed in time
        """
        target = self.targets.get(target_id)
        if target is None:
            raise TargetGoneError(f"Target {target_id} not found", target_id=target_id)

        start = time.monotonic()
        try:
            snapshot = self._collect_from(target)
        except Exception as exc:
            latency_ms = int((time.monotonic() - start) * 1000)
            if self.targets.get(target_id) is None:
                logger.warning(
                    "[METRICS] Target %s was deleted during collection; not recording failure", target_id
                )
                raise
            logger.error("[METRICS] Collection failed for %s after %dms: %s", target.name, latency_ms, exc)
            try:
                self.metrics.save_snapshot(MetricsSnapshot.failed(target_id, str(exc), latency_ms))
            except Exception as store_exc:
                logger.error("[METRICS] Failed to store failed snapshot for %s: %s", target.name, store_exc)
            raise

        snapshot.collection_latency_ms = int((time.monotonic() - start) * 1000)
        self.metrics.save_snapshot(snapshot)
        self.cache.set_latest(target_id, snapshot)
        self.cache.invalidate_aggregated()

        logger.info(
            "[METRICS] %s: cpu=%.1f%% mem=%.1f%% disk=%.1f%% (%dms)",
            target.name,
            snapshot.cpu_usage_percent,
            snapshot.memory_usage_percent,
            snapshot.disk_usage_percent,
            snapshot.collection_latency_ms,
        )

        alerts = threshold_alerts(target, snapshot)
        if alerts:
            self.events.record(
                Event(
                    kind="METRICS_THRESHOLD_EXCEEDED",
                    severity=Severity.WARNING,
                    target_id=target_id,
                    description=f"Metrics thresholds exceeded on {target.name}: " + "; ".join(alerts),
                    metadata={"alerts": alerts},
                )
            )

        return snapshot

    def _collect_from(self, target: TargetRecord) -> MetricsSnapshot:
        if target.platform_type is not PlatformType.LINUX:
            raise UnsupportedPlatformError(
                f"Metrics collection is not supported for {target.platform_type.value} target {target.name}"
            )

        result = self.sessions.execute_command(target.id, METRICS_SCRIPT, timeout=self.command_timeout)
        if not result.success:
            raise SSHCommandError(
                f"Metrics script failed on {target.name}: {result.error}",
                command="metrics script",
                exit_code=result.exit_code,
                error=result.error,
            )
        return parse_linux_metrics(target.id, result.output or "")

    def latest(self, target_id: str) -> Optional[MetricsSnapshot]:
        return self.cache.get_latest(target_id, fallback=self.metrics.latest_snapshot)

    def aggregate(self) -> AggregatedMetrics:
        return self.cache.get_aggregated(self._compute_aggregate)

    def _compute_aggregate(self) -> AggregatedMetrics:
        enabled = self.targets.list_metrics_enabled()
        snapshots = [s for s in (self.latest(t.id) for t in enabled) if s is not None]
        count = len(snapshots)

        def average(values: List[float]) -> float:
            return round(sum(values) / count, 2) if count else 0.0

        return AggregatedMetrics(
            avg_cpu_usage=average([s.cpu_usage_percent for s in snapshots]),
            avg_memory_usage=average([s.memory_usage_percent for s in snapshots]),
            avg_disk_usage=average([s.disk_usage_percent for s in snapshots]),
            total_targets=len(enabled),
            targets_with_metrics=count,
            total_storage_gb=round(sum(s.disk_total_gb for s in snapshots), 2),
            used_storage_gb=round(sum(s.disk_used_gb for s in snapshots), 2),
            total_network_rx_mb=round(sum(s.network_rx_total_mb for s in snapshots), 2),
            total_network_tx_mb=round(sum(s.network_tx_total_mb for s in snapshots), 2),
        )
