"""
SessionPool test suite.

Uses a fake connector so pool bookkeeping can be tested without a network;
the last class runs the SessionManager against a real in-process server.

Run with full visibility:
    pytest tests/test_pool.py -v -s
"""

from __future__ import annotations

import threading
import time
from typing import List

import pytest

from fleet_ssh_tools.credentials import ConnectionConfigResolver
from fleet_ssh_tools.exceptions import PoolExhaustedError, SSHConnectionError, TargetGoneError
from fleet_ssh_tools.manager import SessionManager
from fleet_ssh_tools.models import AuthMaterial, AuthMethod, ConnectionConfig, TargetRecord
from fleet_ssh_tools.pool import SessionPool
from fleet_ssh_tools.repository import InMemoryTargetRepository, PlaintextDecryptor
from ssh_test_server import TEST_HOST, TEST_PASS, TEST_USER


def _report(label: str, detail: str = "") -> None:
    """Uniform test-level print."""
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    def __init__(self, config: ConnectionConfig) -> None:
        self.config = config
        self.alive = True
        self.disconnects = 0

    def is_connected(self) -> bool:
        return self.alive

    def disconnect(self) -> None:
        self.alive = False
        self.disconnects += 1


class FakeConnector:
    def __init__(self) -> None:
        self.opened: List[FakeConnection] = []
        self.fail_next = False

    def __call__(self, config: ConnectionConfig, context: str) -> FakeConnection:
        if self.fail_next:
            self.fail_next = False
            raise SSHConnectionError(f"[{context}] refused")
        conn = FakeConnection(config)
        self.opened.append(conn)
        return conn


def _target(target_id: str = "t1", port: int = 22) -> TargetRecord:
    return TargetRecord(
        id=target_id,
        name=target_id,
        host=TEST_HOST,
        port=port,
        username=TEST_USER,
        auth_method=AuthMethod.PASSWORD,
        auth_material=AuthMaterial(encrypted_password=TEST_PASS),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def pool(clock: FakeClock, connector: FakeConnector) -> SessionPool:
    repo = InMemoryTargetRepository([_target("t1"), _target("t2")])
    resolver = ConnectionConfigResolver(repo, PlaintextDecryptor())
    pool = SessionPool(
        resolver,
        connector=connector,
        max_sessions=2,
        acquire_timeout=0.3,
        idle_timeout=300,
        clock=clock,
    )
    yield pool
    pool.close_all()


class TestAcquireRelease:
    def test_reuses_released_session(self, pool: SessionPool, connector: FakeConnector) -> None:
        first = pool.acquire("t1")
        pool.release("t1", first)
        second = pool.acquire("t1")
        _report("ASSERT", f"same session reused → {first is second}, opened={len(connector.opened)}")
        assert second is first
        assert len(connector.opened) == 1

    def test_opens_up_to_cap(self, pool: SessionPool, connector: FakeConnector) -> None:
        a = pool.acquire("t1")
        b = pool.acquire("t1")
        assert a is not b
        assert len(connector.opened) == 2
        stats = pool.stats()
        _report("ASSERT", f"stats → {stats}")
        assert stats["total_sessions"] == 2
        assert stats["active_sessions"] == 2
        assert stats["sessions_by_target"]["t1"]["active"] == 2

    def test_exhausted_times_out(self, pool: SessionPool) -> None:
        pool.acquire("t1")
        pool.acquire("t1")
        start = time.monotonic()
        with pytest.raises(PoolExhaustedError):
            pool.acquire("t1", timeout=0.2)
        elapsed = time.monotonic() - start
        _report("ASSERT", f"waited ~0.2s → {elapsed:.2f}s")
        assert 0.15 <= elapsed < 2
        assert pool.stats()["sessions_by_target"]["t1"]["total"] == 2

    def test_blocked_acquire_wakes_on_release(self, pool: SessionPool) -> None:
        a = pool.acquire("t1")
        pool.acquire("t1")
        got = []

        def waiter() -> None:
            got.append(pool.acquire("t1", timeout=5))

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.1)
        assert not got
        pool.release("t1", a)
        thread.join(timeout=5)
        _report("ASSERT", f"waiter received the released session → {got and got[0] is a}")
        assert got and got[0] is a

    def test_cap_is_per_target(self, pool: SessionPool, connector: FakeConnector) -> None:
        pool.acquire("t1")
        pool.acquire("t1")
        other = pool.acquire("t2")
        assert other.target_id == "t2"
        assert pool.stats()["target_count"] == 2

    def test_never_exceeds_cap_under_contention(self, pool: SessionPool, connector: FakeConnector) -> None:
        peak = []
        lock = threading.Lock()
        active = [0]

        def borrow() -> None:
            with pool.session("t1", timeout=5):
                with lock:
                    active[0] += 1
                    peak.append(active[0])
                time.sleep(0.02)
                with lock:
                    active[0] -= 1

        threads = [threading.Thread(target=borrow) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        _report("ASSERT", f"peak concurrent sessions → {max(peak)}, opened={len(connector.opened)}")
        assert max(peak) <= 2
        assert len(connector.opened) <= 2

    def test_dead_session_is_replaced(self, pool: SessionPool, connector: FakeConnector) -> None:
        first = pool.acquire("t1")
        pool.release("t1", first)
        first.connection.alive = False
        second = pool.acquire("t1")
        assert second is not first
        assert len(connector.opened) == 2
        assert first.connection.disconnects >= 1

    def test_connect_failure_frees_slot(self, pool: SessionPool, connector: FakeConnector) -> None:
        connector.fail_next = True
        with pytest.raises(SSHConnectionError):
            pool.acquire("t1")
        pool.acquire("t1")
        pool.acquire("t1")
        assert pool.stats()["sessions_by_target"]["t1"]["total"] == 2

    def test_unknown_target(self, pool: SessionPool) -> None:
        with pytest.raises(TargetGoneError):
            pool.acquire("missing")


class TestIdleSweep:
    def test_sweep_closes_idle_sessions(self, pool: SessionPool, clock: FakeClock) -> None:
        session = pool.acquire("t1")
        pool.release("t1", session)

        clock.advance(299)
        assert pool.sweep_idle() == 0

        clock.advance(2)
        closed = pool.sweep_idle()
        _report("ASSERT", f"one idle session closed → {closed}")
        assert closed == 1
        assert not session.connection.is_connected()
        assert pool.stats()["total_sessions"] == 0

    def test_sweep_keeps_busy_sessions(self, pool: SessionPool, clock: FakeClock) -> None:
        session = pool.acquire("t1")
        clock.advance(1000)
        assert pool.sweep_idle() == 0
        assert session.connection.is_connected()

    def test_sweeper_thread(self, connector: FakeConnector, clock: FakeClock) -> None:
        repo = InMemoryTargetRepository([_target("t1")])
        pool = SessionPool(
            ConnectionConfigResolver(repo, PlaintextDecryptor()),
            connector=connector,
            idle_timeout=10,
            sweep_interval=0.05,
            clock=clock,
        )
        session = pool.acquire("t1")
        pool.release("t1", session)
        clock.advance(60)

        pool.start_sweeper()
        try:
            deadline = time.monotonic() + 3
            while pool.stats()["total_sessions"] and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            pool.stop_sweeper()

        _report("ASSERT", f"sweeper evicted the idle session → {pool.stats()}")
        assert pool.stats()["total_sessions"] == 0


class TestForceClose:
    def test_close_target(self, pool: SessionPool) -> None:
        busy = pool.acquire("t1")
        idle = pool.acquire("t1")
        pool.release("t1", idle)
        other = pool.acquire("t2")

        closed = pool.close_target("t1")
        assert closed == 2
        assert not busy.connection.is_connected()
        assert not idle.connection.is_connected()
        assert other.connection.is_connected()

        pool.release("t1", busy)
        assert "t1" not in pool.stats()["sessions_by_target"]

    def test_close_target_drops_cached_config(self, pool: SessionPool, connector: FakeConnector) -> None:
        pool.acquire("t1")
        pool.resolver.targets.update("t1", port=2222)
        pool.close_target("t1")

        pool.acquire("t1")
        _report("ASSERT", f"new connection uses fresh config → port {connector.opened[-1].config.port}")
        assert connector.opened[-1].config.port == 2222

    def test_close_all(self, pool: SessionPool, connector: FakeConnector) -> None:
        pool.acquire("t1")
        pool.acquire("t2")
        pool.close_all()
        assert all(not c.is_connected() for c in connector.opened)
        assert pool.stats()["total_sessions"] == 0


class TestSessionManager:
    """SessionManager over the real in-process SSH server."""

    @pytest.fixture
    def manager(self, ssh_server):
        repo = InMemoryTargetRepository([_target("srv", port=ssh_server.port)])
        pool = SessionPool(ConnectionConfigResolver(repo, PlaintextDecryptor(), timeout=5), max_sessions=2)
        manager = SessionManager(pool, command_timeout=5)
        yield manager
        pool.close_all()

    def test_execute_command(self, manager: SessionManager) -> None:
        result = manager.execute_command("srv", "echo pooled")
        assert result.success
        assert (result.output or "").strip() == "pooled"
        stats = manager.stats()
        _report("ASSERT", f"one idle session after the call → {stats}")
        assert stats["total_sessions"] == 1
        assert stats["idle_sessions"] == 1

    def test_session_is_reused(self, manager: SessionManager, ssh_server) -> None:
        manager.execute_command("srv", "true")
        manager.execute_command("srv", "true")
        assert manager.stats()["total_sessions"] == 1
        session = manager.pool._sessions["srv"][0]
        assert session.command_count == 2

    def test_execute_commands_stops_on_failure(self, manager: SessionManager) -> None:
        results = manager.execute_commands("srv", ["echo one", "exit 4", "echo three"])
        _report("ASSERT", f"stopped after 2 of 3 → {[r.exit_code for r in results]}")
        assert [r.exit_code for r in results] == [0, 4]

    def test_execute_batch(self, manager: SessionManager, ssh_server) -> None:
        result = manager.execute_batch("srv", ["echo a", "echo b"])
        assert result.success
        assert (result.output or "").split() == ["a", "b"]
        assert "echo a && echo b" in ssh_server.received_commands

    def test_close_target_sessions(self, manager: SessionManager) -> None:
        manager.execute_command("srv", "true")
        assert manager.close_target_sessions("srv") == 1
        assert manager.stats()["total_sessions"] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
