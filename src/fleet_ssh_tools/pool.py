"""Bounded per-target SSH session pool with idle eviction."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from . import (
    MAX_SESSIONS_PER_TARGET,
    POOL_ACQUIRE_TIMEOUT,
    SESSION_IDLE_TIMEOUT,
    SESSION_SWEEP_INTERVAL,
)
from .connection import SSHConnection, open_connection
from .credentials import ConnectionConfigResolver
from .exceptions import PoolExhaustedError
from .models import ConnectionConfig
from .types import Clock, PoolStats

logger = logging.getLogger("fleet_ssh_tools.pool")

Connector = Callable[[ConnectionConfig, str], SSHConnection]


@dataclasses.dataclass(eq=False)
class Session:
    """A pooled connection and its bookkeeping."""

    target_id: str
    connection: SSHConnection
    created_at: float
    last_used_at: float
    in_use: bool = False
    command_count: int = 0


class SessionPool:
    """Keeps up to ``max_sessions`` live connections per target.

    A free, still-connected session is reused; otherwise a new connection is
    opened while below the cap; otherwise the caller waits for a release.
    Connecting happens outside the pool lock with the slot reserved.
    """

    def __init__(
        self,
        resolver: ConnectionConfigResolver,
        connector: Connector = open_connection,
        max_sessions: int = MAX_SESSIONS_PER_TARGET,
        acquire_timeout: float = POOL_ACQUIRE_TIMEOUT,
        idle_timeout: float = SESSION_IDLE_TIMEOUT,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
        clock: Clock = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.connector = connector
        self.max_sessions = max_sessions
        self.acquire_timeout = acquire_timeout
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._cond = threading.Condition()
        self._sessions: Dict[str, List[Session]] = {}
        self._connecting: Dict[str, int] = {}
        self._sweeper: Optional[IdleSweeper] = None

    def acquire(self, target_id: str, timeout: Optional[float] = None) -> Session:
        """Borrow a session for *target_id*.

        Raises:
            PoolExhaustedError: If no session frees up within the timeout
            SSHConnectionError: If a new connection cannot be established
            TargetGoneError: If the target no longer exists
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        stale: List[Session] = []

        try:
            with self._cond:
                while True:
                    sessions = self._sessions.setdefault(target_id, [])
                    for session in list(sessions):
                        if session.in_use:
                            continue
                        if session.connection.is_connected():
                            session.in_use = True
                            session.last_used_at = self._clock()
                            logger.debug("[POOL] Reusing session for target %s", target_id)
                            return session
                        sessions.remove(session)
                        stale.append(session)

                    if len(sessions) + self._connecting.get(target_id, 0) < self.max_sessions:
                        self._connecting[target_id] = self._connecting.get(target_id, 0) + 1
                        break

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        msg = (
                            f"No SSH session available for target {target_id} within "
                            f"{timeout:g}s ({self.max_sessions} sessions busy)"
                        )
                        logger.warning("[POOL] EXHAUSTED — %s", msg)
                        raise PoolExhaustedError(msg)
                    self._cond.wait(remaining)
        finally:
            for session in stale:
                logger.info("[POOL] Evicting dead session for target %s", session.target_id)
                session.connection.disconnect()

        return self._open(target_id)

    def _open(self, target_id: str) -> Session:
        try:
            config = self.resolver.resolve(target_id)
            connection = self.connector(config, f"pool session for target {target_id}")
        except BaseException:
            with self._cond:
                self._connecting[target_id] -= 1
                self._cond.notify_all()
            raise

        now = self._clock()
        session = Session(
            target_id=target_id,
            connection=connection,
            created_at=now,
            last_used_at=now,
            in_use=True,
        )
        with self._cond:
            self._connecting[target_id] -= 1
            self._sessions.setdefault(target_id, []).append(session)
            total = len(self._sessions[target_id])
        logger.info("[POOL] Opened new session for target %s (%d/%d)", target_id, total, self.max_sessions)
        return session

    def release(self, target_id: str, session: Session) -> None:
        """Return *session* to the pool; dead or force-closed sessions are dropped."""
        drop = False
        with self._cond:
            session.in_use = False
            session.last_used_at = self._clock()
            sessions = self._sessions.get(target_id, [])
            if session not in sessions:
                drop = True
            elif not session.connection.is_connected():
                sessions.remove(session)
                drop = True
            self._cond.notify_all()

        if drop:
            logger.debug("[POOL] Released session for target %s is closed; discarding", target_id)
            session.connection.disconnect()

    @contextlib.contextmanager
    def session(self, target_id: str, timeout: Optional[float] = None) -> Iterator[Session]:
        borrowed = self.acquire(target_id, timeout)
        try:
            yield borrowed
        finally:
            self.release(target_id, borrowed)

    def sweep_idle(self) -> int:
        """Close free sessions idle longer than ``idle_timeout``; return how many."""
        now = self._clock()
        expired: List[Session] = []
        with self._cond:
            for target_id, sessions in self._sessions.items():
                for session in list(sessions):
                    if not session.in_use and now - session.last_used_at > self.idle_timeout:
                        sessions.remove(session)
                        expired.append(session)
            self._prune_empty()

        for session in expired:
            logger.info(
                "[POOL] Closing idle session for target %s (idle %.0fs)",
                session.target_id, now - session.last_used_at,
            )
            session.connection.disconnect()
        return len(expired)

    def close_target(self, target_id: str) -> int:
        """Force-close every session for *target_id*, busy or not, and drop its config."""
        with self._cond:
            sessions = self._sessions.pop(target_id, [])
            self._cond.notify_all()
        self.resolver.invalidate(target_id)

        for session in sessions:
            session.connection.disconnect()
        if sessions:
            logger.info("[POOL] Force-closed %d session(s) for target %s", len(sessions), target_id)
        return len(sessions)

    def close_all(self) -> None:
        self.stop_sweeper()
        with self._cond:
            target_ids = list(self._sessions)
        for target_id in target_ids:
            self.close_target(target_id)
        logger.info("[POOL] All sessions closed")

    def invalidate_config(self, target_id: str) -> None:
        self.resolver.invalidate(target_id)

    def stats(self) -> PoolStats:
        with self._cond:
            by_target: Dict[str, Dict[str, Any]] = {}
            for target_id, sessions in self._sessions.items():
                if not sessions:
                    continue
                active = sum(1 for s in sessions if s.in_use)
                by_target[target_id] = {
                    "total": len(sessions),
                    "active": active,
                    "idle": len(sessions) - active,
                }

        total = sum(t["total"] for t in by_target.values())
        active = sum(t["active"] for t in by_target.values())
        return {
            "total_sessions": total,
            "active_sessions": active,
            "idle_sessions": total - active,
            "target_count": len(by_target),
            "sessions_by_target": by_target,
        }

    def _prune_empty(self) -> None:
        for target_id in [t for t, s in self._sessions.items() if not s and not self._connecting.get(t)]:
            del self._sessions[target_id]

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._sweeper = IdleSweeper(self, self.sweep_interval)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None


class IdleSweeper(threading.Thread):
    """Background thread that calls ``pool.sweep_idle()`` every *interval* seconds."""

    def __init__(self, pool: SessionPool, interval: float) -> None:
        super().__init__(name="fleet-ssh-idle-sweeper", daemon=True)
        self.pool = pool
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        logger.debug("[POOL] Idle sweeper started (every %.0fs)", self.interval)
        while not self._stop_event.wait(self.interval):
            try:
                closed = self.pool.sweep_idle()
            except Exception:
                logger.exception("[POOL] Idle sweep failed")
                continue
            if closed:
                logger.debug("[POOL] Idle sweep closed %d session(s)", closed)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)
