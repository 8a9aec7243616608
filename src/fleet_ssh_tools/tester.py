"""Staged connection diagnostics: DNS, TCP/handshake, host key, auth, sudo, commands."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import socket
import threading
import time
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

import paramiko

from . import TEST_STAGE_TIMEOUT
from .connection import SSHConnection, fingerprint_md5, fingerprint_sha256, fingerprint_matches
from .credentials import ConnectionConfigResolver
from .exceptions import (
    ConnectionTestInProgressError,
    CredentialError,
    PrivilegeEscalationError,
    SSHConnectionError,
    SSHTimeoutError,
    TargetGoneError,
)
from .executor import CommandExecutor
from .models import (
    AuthMethod,
    ConnectionConfig,
    Event,
    HostKeyPolicy,
    KnownHostFingerprint,
    Severity,
    SudoMode,
    TargetRecord,
    utcnow,
)
from .repository import EventSink, MetricsRepository, TargetRepository

logger = logging.getLogger("fleet_ssh_tools.tester")

DEFAULT_COMMANDS: Tuple[str, ...] = ("whoami", "uname -a")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclasses.dataclass(frozen=True)
class DnsResult:
    success: bool
    time_ms: int
    addresses: Tuple[str, ...] = ()
    error: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class TcpResult:
    success: bool
    time_ms: int
    error: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class HostKeyResult:
    """Outcome of the host-key check.

    ``matched`` is None when no comparison was made (DISABLED, or TOFU first use).
    """

    success: bool
    policy: HostKeyPolicy
    key_type: Optional[str] = None
    fingerprint_sha256: Optional[str] = None
    fingerprint_md5: Optional[str] = None
    matched: Optional[bool] = None
    first_use: bool = False
    error: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class AuthResult:
    success: bool
    time_ms: int
    method: AuthMethod
    error: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class PrivilegeResult:
    success: bool
    mode: SudoMode
    skipped: bool = False
    has_root: bool = False
    error: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class CommandCheck:
    command: str
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class CommandExecutionResult:
    success: bool
    checks: Tuple[CommandCheck, ...] = ()


@dataclasses.dataclass(frozen=True)
class ConnectionTestResult:
    """Immutable outcome of one connection test.

    Stages that were never reached are None.
    """

    target_id: str
    success: bool
    message: str
    latency_ms: int
    dns: Optional[DnsResult] = None
    tcp: Optional[TcpResult] = None
    host_key: Optional[HostKeyResult] = None
    auth: Optional[AuthResult] = None
    privilege: Optional[PrivilegeResult] = None
    commands: Optional[CommandExecutionResult] = None
    detected_os: Optional[str] = None
    detected_username: Optional[str] = None
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    tested_at: datetime = dataclasses.field(default_factory=utcnow)


class _TestRun:
    """Mutable scratchpad filled in stage by stage, frozen by ``finish``."""

    def __init__(self, target: TargetRecord) -> None:
        self.target = target
        self.started = time.monotonic()
        self.message = "Connection test failed"
        self.success = False
        self.dns: Optional[DnsResult] = None
        self.tcp: Optional[TcpResult] = None
        self.host_key: Optional[HostKeyResult] = None
        self.auth: Optional[AuthResult] = None
        self.privilege: Optional[PrivilegeResult] = None
        self.commands: Optional[CommandExecutionResult] = None
        self.detected_os: Optional[str] = None
        self.detected_username: Optional[str] = None
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def fail(self, message: str, error: str) -> None:
        self.message = message
        self.errors.append(error)

    def finish(self) -> ConnectionTestResult:
        return ConnectionTestResult(
            target_id=self.target.id,
            success=self.success,
            message=self.message,
            latency_ms=_elapsed_ms(self.started),
            dns=self.dns,
            tcp=self.tcp,
            host_key=self.host_key,
            auth=self.auth,
            privilege=self.privilege,
            commands=self.commands,
            detected_os=self.detected_os,
            detected_username=self.detected_username,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
        )


class ConnectionTester:
    """Runs the staged diagnostic against one target at a time per target id.

    ``test_connection`` always returns a ``ConnectionTestResult``; only a
    concurrent test of the same target or a missing target raise.
    """

    def __init__(
        self,
        targets: TargetRepository,
        resolver: ConnectionConfigResolver,
        metrics: MetricsRepository,
        events: EventSink,
        executor: Optional[CommandExecutor] = None,
        stage_timeout: float = TEST_STAGE_TIMEOUT,
    ) -> None:
        self.targets = targets
        self.resolver = resolver
        self.metrics = metrics
        self.events = events
        self.executor = executor or CommandExecutor()
        self.stage_timeout = stage_timeout
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def is_testing(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._in_flight

    def test_connection(
        self, target_id: str, custom_commands: Iterable[str] = ()
    ) -> ConnectionTestResult:
        """Run every diagnostic stage against *target_id*.

        Raises:
            ConnectionTestInProgressError: If a test of this target is already running
            TargetGoneError: If the target does not exist
        """
        with self._lock:
            if target_id in self._in_flight:
                raise ConnectionTestInProgressError(
                    f"Connection test already in progress for target {target_id}",
                    target_id=target_id,
                )
            self._in_flight.add(target_id)

        try:
            target = self.targets.get(target_id)
            if target is None:
                raise TargetGoneError(f"Target {target_id} not found", target_id=target_id)

            logger.info("[TEST] Starting connection test for %s (%s:%d)", target.name, target.host, target.port)
            result = self._run(target, tuple(custom_commands))
        finally:
            with self._lock:
                self._in_flight.discard(target_id)

        logger.info(
            "[TEST] %s for %s in %dms — %s",
            "PASSED" if result.success else "FAILED", target.name, result.latency_ms, result.message,
        )
        self.metrics.save_test_result(target_id, result)
        self.events.record(
            Event(
                kind="CONNECTION_TEST_SUCCESS" if result.success else "CONNECTION_TEST_FAILED",
                severity=Severity.INFO if result.success else Severity.WARNING,
                target_id=target_id,
                description=f"Connection test for {target.name}: {result.message}",
                metadata={"latency_ms": result.latency_ms, "errors": list(result.errors)},
            )
        )
        return result

    def _run(self, target: TargetRecord, custom_commands: Tuple[str, ...]) -> ConnectionTestResult:
        run = _TestRun(target)
        context = f"connection test {target.name}"

        run.dns = self._resolve_dns(target.host, target.port)
        if not run.dns.success:
            run.fail("DNS resolution failed", f"DNS resolution failed: {run.dns.error}")
            return run.finish()

        try:
            config = dataclasses.replace(self.resolver.build(target), timeout=self.stage_timeout)
        except CredentialError as e:
            run.auth = AuthResult(success=False, time_ms=0, method=target.auth_method, error=str(e))
            run.fail("Authentication failed", f"Credential error: {e}")
            return run.finish()

        connection = SSHConnection(config, keepalive_interval=0)
        try:
            self._run_connected_stages(run, connection, config, context, custom_commands)
        except Exception as e:
            logger.exception("[TEST] [%s] Unexpected error", context)
            run.fail("Connection test failed", f"Unexpected error: {e}")
        finally:
            connection.disconnect()

        return run.finish()

    def _run_connected_stages(
        self,
        run: _TestRun,
        connection: SSHConnection,
        config: ConnectionConfig,
        context: str,
        custom_commands: Tuple[str, ...],
    ) -> None:
        target = run.target

        stage_start = time.monotonic()
        try:
            connection.open_socket(context)
            server_key = connection.start_handshake(context)
        except SSHConnectionError as e:
            run.tcp = TcpResult(success=False, time_ms=_elapsed_ms(stage_start), error=str(e))
            message = "Connection timeout" if isinstance(e, SSHTimeoutError) else "TCP connection failed"
            run.fail(message, f"TCP connection failed: {e}")
            return
        run.tcp = TcpResult(success=True, time_ms=_elapsed_ms(stage_start))

        run.host_key = self._verify_host_key(run, server_key, config)
        if not run.host_key.success:
            return

        stage_start = time.monotonic()
        try:
            connection.authenticate(context)
        except (SSHConnectionError, CredentialError) as e:
            run.auth = AuthResult(
                success=False, time_ms=_elapsed_ms(stage_start), method=config.auth_method, error=str(e)
            )
            run.fail("Authentication failed", f"Authentication failed: {e}")
            return
        run.auth = AuthResult(success=True, time_ms=_elapsed_ms(stage_start), method=config.auth_method)

        run.privilege = self._probe_privilege(run, connection, context)

        run.commands = self._run_commands(run, connection, context, custom_commands)
        if run.errors:
            return

        run.success = True
        run.message = "Connection successful"

    def _resolve_dns(self, host: str, port: int) -> DnsResult:
        start = time.monotonic()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="fleet-ssh-dns")
        try:
            future = pool.submit(socket.getaddrinfo, host, port, 0, socket.SOCK_STREAM)
            infos = future.result(timeout=self.stage_timeout)
        except concurrent.futures.TimeoutError:
            return DnsResult(
                success=False,
                time_ms=_elapsed_ms(start),
                error=f"timed out after {self.stage_timeout:g}s",
            )
        except OSError as e:
            return DnsResult(success=False, time_ms=_elapsed_ms(start), error=f"Host not found: {host} ({e})")
        finally:
            pool.shutdown(wait=False)

        addresses = tuple(dict.fromkeys(str(info[4][0]) for info in infos))
        logger.debug("[TEST] DNS %s -> %s", host, ", ".join(addresses))
        return DnsResult(success=True, time_ms=_elapsed_ms(start), addresses=addresses)

    def _verify_host_key(
        self, run: _TestRun, key: paramiko.PKey, config: ConnectionConfig
    ) -> HostKeyResult:
        target = run.target
        policy = config.host_key_policy
        sha256 = fingerprint_sha256(key)
        md5 = fingerprint_md5(key)
        details = dict(
            policy=policy, key_type=key.get_name(), fingerprint_sha256=sha256, fingerprint_md5=md5
        )

        if policy is HostKeyPolicy.DISABLED:
            run.warnings.append("Host key verification is disabled for this target")
            return HostKeyResult(success=True, **details)

        if policy is HostKeyPolicy.TOFU and not config.known_fingerprints:
            now = utcnow()
            self.targets.save_fingerprints(
                target.id,
                [KnownHostFingerprint(key.get_name(), sha256, first_seen_at=now, last_verified_at=now)],
            )
            self.resolver.invalidate(target.id)
            run.warnings.append(f"Host key accepted on first use: {sha256}")
            self.events.record(
                Event(
                    kind="HOST_KEY_TOFU_ACCEPT",
                    severity=Severity.WARNING,
                    target_id=target.id,
                    description=f"Accepted and stored host key for {target.name} on first use",
                    metadata={"key_type": key.get_name(), "fingerprint": sha256},
                )
            )
            return HostKeyResult(success=True, first_use=True, **details)

        if fingerprint_matches(key, config.known_fingerprints):
            return HostKeyResult(success=True, matched=True, **details)

        error = f"Host key mismatch for {target.host} - possible MITM attack"
        logger.critical("[TEST] %s (received %s)", error, sha256)
        self.events.record(
            Event(
                kind="HOST_KEY_MISMATCH",
                severity=Severity.CRITICAL,
                target_id=target.id,
                description=f"Host key verification failed for {target.name} - possible MITM attack",
                metadata={
                    "received": sha256,
                    "expected": list(config.known_fingerprints),
                    "policy": policy.value,
                },
            )
        )
        run.fail("Host key verification failed", error)
        return HostKeyResult(success=False, matched=False, error=error, **details)

    def _probe_privilege(
        self, run: _TestRun, connection: SSHConnection, context: str
    ) -> PrivilegeResult:
        mode = run.target.sudo_mode
        if mode is SudoMode.NONE:
            return PrivilegeResult(success=True, mode=mode, skipped=True)

        try:
            has_root = self._escalate(run.target, connection, context)
        except PrivilegeEscalationError as e:
            run.warnings.append(f"Sudo test failed: {e}")
            return PrivilegeResult(success=False, mode=mode, error=str(e))

        return PrivilegeResult(success=True, mode=mode, has_root=has_root)

    def _escalate(self, target: TargetRecord, connection: SSHConnection, context: str) -> bool:
        """Run ``whoami`` through sudo and report whether it answered root.

        Raises:
            PrivilegeEscalationError: If sudo could not run the command
        """
        stdin_data: Optional[str] = None
        if target.sudo_mode is SudoMode.NOPASSWD:
            command = "sudo -n whoami"
        else:
            try:
                password = self.resolver.decrypt_sudo_password(target)
            except CredentialError as e:
                password = None
                logger.warning("[TEST] [%s] %s", context, e)
            if password is None:
                raise PrivilegeEscalationError("no sudo password configured")
            command = "sudo -S whoami"
            stdin_data = password + "\n"

        result = self.executor.run(
            connection, command, context, timeout=self.stage_timeout, stdin_data=stdin_data
        )
        if not result.success:
            raise PrivilegeEscalationError(result.error or f"sudo exited with status {result.exit_code}")
        return (result.output or "").strip() == "root"

    def _run_commands(
        self,
        run: _TestRun,
        connection: SSHConnection,
        context: str,
        custom_commands: Tuple[str, ...],
    ) -> CommandExecutionResult:
        checks: List[CommandCheck] = []

        for command in DEFAULT_COMMANDS + custom_commands:
            result = self.executor.run(connection, command, context, timeout=self.stage_timeout)
            output = (result.output or "").strip() or None
            checks.append(
                CommandCheck(
                    command=command,
                    success=result.success,
                    output=output,
                    error=result.error if not result.success else None,
                    exit_code=result.exit_code,
                )
            )

            if not result.success:
                if not connection.is_connected():
                    run.fail("SSH connection error", f"SSH connection error: {result.error}")
                    break
                if command in DEFAULT_COMMANDS:
                    run.warnings.append(f"Command {command!r} failed: {result.error}")
                else:
                    run.warnings.append(f"Custom command {command!r} failed: {result.error}")
                continue

            if command == "whoami":
                run.detected_username = output
            elif command == "uname -a":
                run.detected_os = output

        return CommandExecutionResult(success=all(c.success for c in checks), checks=tuple(checks))
