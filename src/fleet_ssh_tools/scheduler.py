"""In-process scheduling queue: repeatable per-target jobs, manual jobs, retry/backoff."""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from . import (
    BACKOFF_BASE_DELAY,
    COMPLETED_RETENTION_COUNT,
    COMPLETED_RETENTION_SECONDS,
    FAILED_RETENTION_COUNT,
    FAILED_RETENTION_SECONDS,
    JOB_ATTEMPTS,
    QUEUE_CONCURRENCY,
)
from .models import TriggerKind
from .types import QueueStats

logger = logging.getLogger("fleet_ssh_tools.scheduler")

MANUAL_PRIORITY = 1
SCHEDULED_PRIORITY = 10

# Upper bound on how long the dispatcher sleeps between due-time checks.
_DISPATCH_MAX_WAIT = 1.0

_job_ids = itertools.count(1)


def repeat_key(target_id: str) -> str:
    return f"metrics:{target_id}"


@dataclasses.dataclass(eq=False)
class Job:
    """One unit of work for the handler. Lower ``priority`` runs first."""

    target_id: str
    trigger: TriggerKind
    priority: int
    max_attempts: int
    id: int = dataclasses.field(default_factory=lambda: next(_job_ids))
    repeat_key: Optional[str] = None
    attempts_made: int = 0
    created_at: float = 0.0
    run_at: float = 0.0
    finished_at: Optional[float] = None
    result: Any = None
    error: Optional[str] = None


@dataclasses.dataclass
class RepeatableSchedule:
    key: str
    target_id: str
    interval_seconds: float
    next_run_at: float


JobHandler = Callable[[Job], Any]


def _retain(jobs: List[Job], now: float, max_age: float, max_count: int) -> List[Job]:
    """Newest *max_count* jobs that finished at most *max_age* seconds ago."""
    fresh = [j for j in jobs if now - (j.finished_at or now) <= max_age]
    return fresh[max(0, len(fresh) - max_count):]


class SchedulingQueue:
    """Priority job queue with a dispatcher thread and a fixed pool of workers.

    State lives in memory only; callers rebuild repeatable schedules on start.
    A handler exception with ``retryable = False`` fails the job immediately;
    any other exception is retried with exponential backoff until
    ``attempts`` runs have been made.
    """

    def __init__(
        self,
        handler: JobHandler,
        concurrency: int = QUEUE_CONCURRENCY,
        attempts: int = JOB_ATTEMPTS,
        backoff_base_delay: float = BACKOFF_BASE_DELAY,
        completed_retention_seconds: float = COMPLETED_RETENTION_SECONDS,
        completed_retention_count: int = COMPLETED_RETENTION_COUNT,
        failed_retention_seconds: float = FAILED_RETENTION_SECONDS,
        failed_retention_count: int = FAILED_RETENTION_COUNT,
    ) -> None:
        self.handler = handler
        self.concurrency = concurrency
        self.attempts = attempts
        self.backoff_base_delay = backoff_base_delay
        self.completed_retention_seconds = completed_retention_seconds
        self.completed_retention_count = completed_retention_count
        self.failed_retention_seconds = failed_retention_seconds
        self.failed_retention_count = failed_retention_count

        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._ready: List[Tuple[int, int, Job]] = []
        self._delayed: List[Tuple[float, int, Job]] = []
        self._repeatables: Dict[str, RepeatableSchedule] = {}
        self._active: Set[Job] = set()
        self._completed: List[Job] = []
        self._failed: List[Job] = []
        self._paused = False
        self._running = False
        self._threads: List[threading.Thread] = []

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True

        dispatcher = threading.Thread(target=self._dispatch_loop, name="fleet-ssh-dispatcher", daemon=True)
        workers = [
            threading.Thread(target=self._worker_loop, name=f"fleet-ssh-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        self._threads = [dispatcher] + workers
        for thread in self._threads:
            thread.start()
        logger.info("[QUEUE] Started with %d worker(s)", self.concurrency)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the dispatcher and workers; running jobs finish, queued jobs are dropped."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        self._threads = []
        logger.info("[QUEUE] Stopped")

    @property
    def running(self) -> bool:
        return self._running

    # -- scheduling --------------------------------------------------------

    def schedule(self, target_id: str, interval_seconds: float) -> RepeatableSchedule:
        """Install the repeatable job for *target_id*, replacing any existing one."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        key = repeat_key(target_id)
        schedule = RepeatableSchedule(
            key=key,
            target_id=target_id,
            interval_seconds=interval_seconds,
            next_run_at=time.monotonic() + interval_seconds,
        )
        with self._cond:
            replaced = self._repeatables.pop(key, None)
            self._repeatables[key] = schedule
            self._cond.notify_all()

        if replaced is not None:
            logger.info(
                "[QUEUE] Re-armed %s: every %gs (was %gs)", key, interval_seconds, replaced.interval_seconds
            )
        else:
            logger.info("[QUEUE] Scheduled %s every %gs", key, interval_seconds)
        return schedule

    def unschedule(self, target_id: str) -> bool:
        key = repeat_key(target_id)
        with self._cond:
            removed = self._repeatables.pop(key, None) is not None
        if removed:
            logger.info("[QUEUE] Unscheduled %s", key)
        return removed

    def repeatables(self) -> List[RepeatableSchedule]:
        with self._cond:
            return [dataclasses.replace(s) for s in self._repeatables.values()]

    def enqueue(
        self,
        target_id: str,
        trigger: TriggerKind = TriggerKind.MANUAL,
        priority: Optional[int] = None,
    ) -> Job:
        """Add a one-off job; manual jobs default to priority 1, others to 10."""
        if priority is None:
            priority = MANUAL_PRIORITY if trigger is TriggerKind.MANUAL else SCHEDULED_PRIORITY
        now = time.monotonic()
        job = Job(
            target_id=target_id,
            trigger=trigger,
            priority=priority,
            max_attempts=self.attempts,
            created_at=now,
            run_at=now,
        )
        with self._cond:
            self._push_ready(job)
        logger.debug("[QUEUE] Enqueued job %d (%s) for target %s", job.id, trigger.value, target_id)
        return job

    def _push_ready(self, job: Job) -> None:
        heapq.heappush(self._ready, (job.priority, next(self._seq), job))
        self._cond.notify_all()

    # -- admin -------------------------------------------------------------

    def pause(self) -> None:
        with self._cond:
            self._paused = True
        logger.info("[QUEUE] Paused")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("[QUEUE] Resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    def clean(self) -> int:
        """Drop completed and failed jobs past their retention; return how many."""
        with self._cond:
            removed = self._trim(time.monotonic())
        logger.info("[QUEUE] Cleaned %d finished job(s)", removed)
        return removed

    def _trim(self, now: float) -> int:
        before = len(self._completed) + len(self._failed)
        self._completed = _retain(self._completed, now, self.completed_retention_seconds, self.completed_retention_count)
        self._failed = _retain(self._failed, now, self.failed_retention_seconds, self.failed_retention_count)
        return before - len(self._completed) - len(self._failed)

    def completed_jobs(self) -> List[Job]:
        with self._cond:
            return list(self._completed)

    def failed_jobs(self) -> List[Job]:
        with self._cond:
            return list(self._failed)

    def stats(self) -> QueueStats:
        now = time.monotonic()
        with self._cond:
            return {
                "waiting": len(self._ready),
                "active": len(self._active),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "delayed": len(self._delayed),
                "paused": self._paused,
                "repeatable_jobs": [
                    {
                        "key": s.key,
                        "target_id": s.target_id,
                        "every_seconds": s.interval_seconds,
                        "next_run_in_seconds": round(max(0.0, s.next_run_at - now), 1),
                    }
                    for s in self._repeatables.values()
                ],
            }

    def wait_idle(self, timeout: float) -> bool:
        """Block until nothing is waiting, delayed or running; False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._ready or self._delayed or self._active:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    # -- threads -----------------------------------------------------------

    def _dispatch_loop(self) -> None:
        with self._cond:
            while self._running:
                now = time.monotonic()

                for schedule in self._repeatables.values():
                    if schedule.next_run_at <= now:
                        job = Job(
                            target_id=schedule.target_id,
                            trigger=TriggerKind.SCHEDULED,
                            priority=SCHEDULED_PRIORITY,
                            max_attempts=self.attempts,
                            repeat_key=schedule.key,
                            created_at=now,
                            run_at=now,
                        )
                        self._push_ready(job)
                        schedule.next_run_at = now + schedule.interval_seconds

                while self._delayed and self._delayed[0][0] <= now:
                    _, _, job = heapq.heappop(self._delayed)
                    self._push_ready(job)

                due = [s.next_run_at for s in self._repeatables.values()]
                if self._delayed:
                    due.append(self._delayed[0][0])
                wait = min(due) - now if due else _DISPATCH_MAX_WAIT
                self._cond.wait(max(0.0, min(wait, _DISPATCH_MAX_WAIT)))

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while self._running and (self._paused or not self._ready):
                    self._cond.wait()
                if not self._running:
                    return
                _, _, job = heapq.heappop(self._ready)
                self._active.add(job)

            self._run(job)

    def _run(self, job: Job) -> None:
        job.attempts_made += 1
        logger.debug(
            "[QUEUE] Job %d (%s) for target %s: attempt %d/%d",
            job.id, job.trigger.value, job.target_id, job.attempts_made, job.max_attempts,
        )
        try:
            result = self.handler(job)
        except Exception as exc:
            self._on_failure(job, exc)
            return

        with self._cond:
            job.result = result
            job.error = None
            job.finished_at = time.monotonic()
            self._active.discard(job)
            self._completed.append(job)
            self._trim(job.finished_at)
            self._cond.notify_all()

    def _on_failure(self, job: Job, exc: Exception) -> None:
        retryable = getattr(exc, "retryable", True)
        now = time.monotonic()

        with self._cond:
            job.error = str(exc)
            self._active.discard(job)

            if retryable and job.attempts_made < job.max_attempts:
                delay = self.backoff_base_delay * 2 ** (job.attempts_made - 1)
                job.trigger = TriggerKind.RETRY
                job.run_at = now + delay
                heapq.heappush(self._delayed, (job.run_at, next(self._seq), job))
                logger.warning(
                    "[QUEUE] Job %d for target %s failed (attempt %d/%d), retrying in %gs: %s",
                    job.id, job.target_id, job.attempts_made, job.max_attempts, delay, exc,
                )
            else:
                job.finished_at = now
                self._failed.append(job)
                self._trim(now)
                logger.error(
                    "[QUEUE] Job %d for target %s failed permanently after %d attempt(s)%s: %s",
                    job.id, job.target_id, job.attempts_made,
                    "" if retryable else " (not retryable)", exc,
                )
            self._cond.notify_all()
