"""Facade wiring the fleet subsystem together and exposing its admin operations."""

from __future__ import annotations

import functools
import logging
from typing import Iterable, List, Optional

from .cache import MetricsCache
from .collector import MetricsCollector
from .connection import open_connection
from .credentials import ConnectionConfigResolver
from .exceptions import TargetGoneError
from .executor import CommandExecutor
from .failures import FailureTracker
from .manager import SessionManager
from .models import AggregatedMetrics, CommandResult, MetricsSnapshot, TriggerKind
from .pool import Connector, SessionPool
from .repository import Decryptor, EventSink, MetricsRepository, TargetRepository
from .scheduler import Job, SchedulingQueue
from .settings import Settings
from .tester import ConnectionTester, ConnectionTestResult
from .types import PoolStats, QueueStats
from .validator import CommandValidator
from .worker import MetricsJobProcessor

logger = logging.getLogger("fleet_ssh_tools.monitor")


class FleetMonitor:
    """Owns the pool, queue, sweeper and caches for one process.

    Usage:
        with FleetMonitor(targets, metrics, events, decryptor) as monitor:
            monitor.test_connection("web-1")
    """

    def __init__(
        self,
        targets: TargetRepository,
        metrics: MetricsRepository,
        events: EventSink,
        decryptor: Decryptor,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.targets = targets
        self.metrics = metrics
        self.events = events

        self.validator = CommandValidator()
        self.executor = CommandExecutor(self.validator)
        self.resolver = ConnectionConfigResolver(
            targets, decryptor, ttl=s.config_cache_ttl, timeout=s.connection_timeout
        )
        default_connector = functools.partial(open_connection, keepalive_interval=s.keepalive_interval)
        self.pool = SessionPool(
            self.resolver,
            connector=connector or default_connector,
            max_sessions=s.max_sessions_per_target,
            acquire_timeout=s.pool_acquire_timeout,
            idle_timeout=s.session_idle_timeout,
            sweep_interval=s.session_sweep_interval,
        )
        self.sessions = SessionManager(self.pool, self.executor, command_timeout=s.command_timeout)
        self.tester = ConnectionTester(
            targets, self.resolver, metrics, events, self.executor, stage_timeout=s.test_stage_timeout
        )
        self.cache = MetricsCache(latest_ttl=s.latest_metrics_ttl, aggregated_ttl=s.aggregated_metrics_ttl)
        self.collector = MetricsCollector(
            targets, metrics, self.sessions, self.cache, events, command_timeout=s.command_timeout
        )
        self.failures = FailureTracker(ttl=s.failure_count_ttl)
        self.processor = MetricsJobProcessor(
            targets,
            self.collector,
            self.failures,
            events,
            unschedule=self._unschedule,
            failure_threshold=s.failure_threshold,
        )
        self.queue = SchedulingQueue(
            self.processor,
            concurrency=s.queue_concurrency,
            attempts=s.job_attempts,
            backoff_base_delay=s.backoff_base_delay,
            completed_retention_seconds=s.completed_retention_seconds,
            completed_retention_count=s.completed_retention_count,
            failed_retention_seconds=s.failed_retention_seconds,
            failed_retention_count=s.failed_retention_count,
        )

    def _unschedule(self, target_id: str) -> bool:
        return self.queue.unschedule(target_id)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the sweeper and queue, and install a schedule per enabled target."""
        self.pool.start_sweeper()
        self.queue.start()
        enabled = self.targets.list_metrics_enabled()
        for target in enabled:
            self.queue.schedule(target.id, target.metrics_interval_seconds)
        logger.info("[MONITOR] Started; %d target(s) scheduled for metrics", len(enabled))

    def stop(self) -> None:
        self.queue.stop()
        self.pool.close_all()
        logger.info("[MONITOR] Stopped")

    def __enter__(self) -> FleetMonitor:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.stop()

    # -- on-demand operations ---------------------------------------------

    def test_connection(self, target_id: str, custom_commands: Iterable[str] = ()) -> ConnectionTestResult:
        return self.tester.test_connection(target_id, custom_commands)

    def execute_command(self, target_id: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        return self.sessions.execute_command(target_id, command, timeout)

    def collect_now(self, target_id: str) -> Job:
        return self.queue.enqueue(target_id, TriggerKind.MANUAL)

    def collect_all_now(self) -> List[Job]:
        jobs = [self.collect_now(t.id) for t in self.targets.list_metrics_enabled()]
        logger.info("[MONITOR] Queued immediate collection for %d target(s)", len(jobs))
        return jobs

    def latest_metrics(self, target_id: str) -> Optional[MetricsSnapshot]:
        return self.collector.latest(target_id)

    def aggregated_metrics(self) -> AggregatedMetrics:
        return self.collector.aggregate()

    # -- target changes ----------------------------------------------------

    def update_target_metrics(
        self, target_id: str, enabled: bool, interval_seconds: Optional[int] = None
    ) -> None:
        """Apply a metrics on/off or interval change and re-arm the schedule.

        Raises:
            TargetGoneError: If the target does not exist
        """
        if self.targets.get(target_id) is None:
            raise TargetGoneError(f"Target {target_id} not found", target_id=target_id)

        self.targets.set_metrics_enabled(target_id, enabled, interval_seconds)
        if not enabled:
            self.queue.unschedule(target_id)
            return

        target = self.targets.get(target_id)
        if target is None:
            raise TargetGoneError(f"Target {target_id} not found", target_id=target_id)
        self.failures.reset(target_id)
        self.queue.schedule(target_id, target.metrics_interval_seconds)

    def invalidate_config(self, target_id: str) -> None:
        """Drop the cached connection config, e.g. after credential rotation."""
        self.pool.invalidate_config(target_id)

    def close_target_sessions(self, target_id: str) -> int:
        return self.pool.close_target(target_id)

    # -- queue/pool admin --------------------------------------------------

    def pause_queue(self) -> None:
        self.queue.pause()

    def resume_queue(self) -> None:
        self.queue.resume()

    def clean_queue(self) -> int:
        return self.queue.clean()

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def pool_stats(self) -> PoolStats:
        return self.pool.stats()
