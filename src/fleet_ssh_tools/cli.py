"""Command-line interface for Fleet SSH tools."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
import time
from typing import List, Mapping, Optional

from tqdm import tqdm

from . import DEFAULT_TARGET_COUNT, SSH_PORT
from .exceptions import FleetSSHToolsError
from .models import (
    AuthMaterial,
    AuthMethod,
    HostKeyPolicy,
    KnownHostFingerprint,
    SudoMode,
    TargetRecord,
)
from .monitor import FleetMonitor
from .repository import (
    InMemoryEventSink,
    InMemoryMetricsRepository,
    InMemoryTargetRepository,
    PlaintextDecryptor,
)
from .tester import ConnectionTestResult

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def load_targets(environ: Optional[Mapping[str, str]] = None) -> List[TargetRecord]:
    """Build target records from ``FLEET_TARGET_<n>_*`` environment variables.

    Credentials are read from environment variables — no secrets in the codebase.
      FLEET_TARGET_<n>_HOST / _PORT / _USER / _PASS / _KEY_FILE / _KEY_PASSPHRASE
      FLEET_TARGET_<n>_SUDO_PASS / _SUDO_NOPASSWD / _HOST_KEY_POLICY / _FINGERPRINT
      FLEET_TARGET_<n>_METRICS_INTERVAL
    Slots without a host are skipped.
    """
    environ = os.environ if environ is None else environ
    targets = []

    for index in range(DEFAULT_TARGET_COUNT):
        prefix = f"FLEET_TARGET_{index}_"
        host = environ.get(prefix + "HOST", "")
        if not host:
            continue

        key_file = environ.get(prefix + "KEY_FILE", "")
        passphrase = environ.get(prefix + "KEY_PASSPHRASE") or None
        if key_file:
            with open(os.path.expanduser(key_file), "r", encoding="utf-8") as f:
                private_key = f.read()
            method = AuthMethod.KEY_WITH_PASSPHRASE if passphrase else AuthMethod.KEY
            material = AuthMaterial(encrypted_private_key=private_key, encrypted_passphrase=passphrase)
        else:
            method = AuthMethod.PASSWORD
            material = AuthMaterial(encrypted_password=environ.get(prefix + "PASS", ""))

        sudo_password = environ.get(prefix + "SUDO_PASS") or None
        if sudo_password:
            sudo_mode = SudoMode.PASSWORD_REQUIRED
        elif environ.get(prefix + "SUDO_NOPASSWD", "").lower() in ("1", "true", "yes"):
            sudo_mode = SudoMode.NOPASSWD
        else:
            sudo_mode = SudoMode.NONE

        fingerprint = environ.get(prefix + "FINGERPRINT", "")
        targets.append(
            TargetRecord(
                id=f"target-{index}",
                name=host,
                host=host,
                port=int(environ.get(prefix + "PORT", str(SSH_PORT))),
                username=environ.get(prefix + "USER", ""),
                auth_method=method,
                auth_material=material,
                metrics_enabled=True,
                metrics_interval_seconds=int(environ.get(prefix + "METRICS_INTERVAL", "900")),
                host_key_policy=HostKeyPolicy(environ.get(prefix + "HOST_KEY_POLICY", "TOFU").upper()),
                known_fingerprints=[KnownHostFingerprint("unknown", fingerprint)] if fingerprint else [],
                sudo_mode=sudo_mode,
                encrypted_sudo_password=sudo_password,
            )
        )

    return targets


def create_monitor() -> FleetMonitor:
    """Create a monitor over the environment-configured targets."""
    return FleetMonitor(
        targets=InMemoryTargetRepository(load_targets()),
        metrics=InMemoryMetricsRepository(),
        events=InMemoryEventSink(),
        decryptor=PlaintextDecryptor(),
    )


def _target_id(args) -> str:
    return f"target-{args.target}"


def _print_test_result(result: ConnectionTestResult) -> None:
    def line(stage: str, success: Optional[bool], detail: str = "") -> None:
        status = "skipped" if success is None else ("OK" if success else "FAILED")
        print(f"  {stage:<12} {status:<8} {detail}")

    print(f"Connection test: {'SUCCESS' if result.success else 'FAILED'} — {result.message} ({result.latency_ms}ms)")
    if result.dns:
        line("dns", result.dns.success, ", ".join(result.dns.addresses) or (result.dns.error or ""))
    if result.tcp:
        line("tcp", result.tcp.success, f"{result.tcp.time_ms}ms")
    if result.host_key:
        line("host key", result.host_key.success, result.host_key.fingerprint_sha256 or "")
    if result.auth:
        line("auth", result.auth.success, result.auth.method.value)
    if result.privilege:
        if result.privilege.skipped:
            line("sudo", None)
        else:
            line("sudo", result.privilege.success, "root" if result.privilege.has_root else "")
    if result.commands:
        for check in result.commands.checks:
            line("command", check.success, check.command)
    if result.detected_username:
        print(f"User: {result.detected_username}")
    if result.detected_os:
        print(f"OS:   {result.detected_os}")
    for warning in result.warnings:
        print(f"WARNING: {warning}", file=sys.stderr)
    for error in result.errors:
        print(f"ERROR: {error}", file=sys.stderr)


def command_test(args) -> int:
    """Run the staged connection test against one target."""
    monitor = create_monitor()
    try:
        result = monitor.test_connection(_target_id(args), args.extra_commands or ())
        _print_test_result(result)
        return 0 if result.success else 1
    except FleetSSHToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    finally:
        monitor.stop()


def command_execute(args) -> int:
    """Execute command on a target through the session pool."""
    monitor = create_monitor()
    try:
        result = monitor.execute_command(_target_id(args), args.remote_command, timeout=args.timeout)

        print(f"Return code: {result.exit_code}")
        if result.output:
            print(f"STDOUT:\n{result.output}")
        if result.error:
            print(f"STDERR:\n{result.error}", file=sys.stderr)

        return 0 if result.success else 1

    except FleetSSHToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    finally:
        monitor.stop()


def command_collect(args) -> int:
    """Collect one metrics snapshot from a target and print it."""
    monitor = create_monitor()
    try:
        snapshot = monitor.collector.collect(_target_id(args))
        for key, value in snapshot.to_dict().items():
            print(f"{key:<24} {value}")
        return 0
    except FleetSSHToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    finally:
        monitor.stop()


def command_collect_all(args) -> int:
    """Collect metrics from every configured target, then print the fleet aggregate."""
    monitor = create_monitor()
    targets = monitor.targets.list_metrics_enabled()
    failures = 0

    try:
        progress_bar = tqdm(total=len(targets), unit="target", desc="Collecting metrics")
        for target in targets:
            try:
                snapshot = monitor.collector.collect(target.id)
                progress_bar.set_postfix({"host": target.host, "cpu": f"{snapshot.cpu_usage_percent}%"})
            except FleetSSHToolsError as e:
                failures += 1
                tqdm.write(f"{target.host}: {e}", file=sys.stderr)
            progress_bar.update(1)
        progress_bar.close()

        aggregated = monitor.aggregated_metrics()
        for field in dataclasses.fields(aggregated):
            print(f"{field.name:<24} {getattr(aggregated, field.name)}")
        return 0 if failures == 0 else 1
    finally:
        monitor.stop()


def command_run(args) -> int:
    """Run scheduled collection until interrupted, printing queue and pool stats."""
    monitor = create_monitor()
    monitor.start()
    if args.collect_now:
        monitor.collect_all_now()

    try:
        while True:
            time.sleep(args.stats_interval)
            queue = monitor.queue_stats()
            pool = monitor.pool_stats()
            print(
                f"queue: waiting={queue['waiting']} active={queue['active']} "
                f"completed={queue['completed']} failed={queue['failed']} delayed={queue['delayed']} | "
                f"pool: total={pool['total_sessions']} active={pool['active_sessions']} "
                f"idle={pool['idle_sessions']}"
            )
    except KeyboardInterrupt:
        print("Stopping ...")
    finally:
        monitor.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="Fleet SSH Tools - Test, command and monitor servers over SSH"
    )

    # Target selection
    parser.add_argument(
        "--target",
        type=int,
        default=0,
        help="Target index from FLEET_TARGET_<n>_* variables (default: 0)",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Connection test
    test_parser = subparsers.add_parser("test", help="Run the staged connection test")
    test_parser.add_argument(
        "--command", dest="extra_commands", action="append", metavar="COMMAND",
        help="Extra command to run after whoami/uname (repeatable)",
    )
    test_parser.set_defaults(func=command_test)

    # Execute command
    exec_parser = subparsers.add_parser("exec", help="Execute command")
    exec_parser.add_argument("remote_command", metavar="COMMAND", help="Command to execute")
    exec_parser.add_argument(
        "--timeout", type=float, default=None,
        help="Command timeout in seconds (default: FLEET_COMMAND_TIMEOUT or 30)",
    )
    exec_parser.set_defaults(func=command_execute)

    # Collect metrics
    collect_parser = subparsers.add_parser("collect", help="Collect metrics from one target")
    collect_parser.set_defaults(func=command_collect)

    collect_all_parser = subparsers.add_parser(
        "collect-all", help="Collect metrics from every configured target",
    )
    collect_all_parser.set_defaults(func=command_collect_all)

    # Scheduled collection
    run_parser = subparsers.add_parser("run", help="Run scheduled metrics collection")
    run_parser.add_argument(
        "--stats-interval", type=float, default=30.0,
        help="Seconds between queue/pool stats lines (default: 30)",
    )
    run_parser.add_argument(
        "--collect-now", action="store_true", default=False,
        help="Queue an immediate collection for every target on start",
    )
    run_parser.set_defaults(func=command_run)

    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt="%H:%M:%S")
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
