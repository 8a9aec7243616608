"""Pytest configuration — path setup, logging and shared SSH server fixtures."""

import logging
import os
import sys

import pytest

# ---------------------------------------------------------------------------
# Path setup: ensure the package is importable regardless of installation
# ---------------------------------------------------------------------------
_SRC_DIR = os.path.join(os.path.dirname(__file__), os.pardir, "src")
_SRC_DIR = os.path.normpath(_SRC_DIR)
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

# ---------------------------------------------------------------------------
# Logging: route all library log output to the console so pytest -s shows it
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet down paramiko's own noisy transport-level debug logs
logging.getLogger("paramiko").setLevel(logging.WARNING)


@pytest.fixture(scope="module")
def ssh_server():
    """One in-process SSH server for the whole test module."""
    from ssh_test_server import SSHTestServer

    print("\n" + "=" * 72)
    print("  FIXTURE SETUP: Starting in-process SSH server ...")
    print("=" * 72)

    srv = SSHTestServer()
    srv.start()
    yield srv

    print("\n" + "=" * 72)
    print("  FIXTURE TEARDOWN: Stopping SSH server ...")
    print("=" * 72)
    srv.stop()


@pytest.fixture
def black_hole_server():
    """TCP listener that never sends an SSH banner."""
    from ssh_test_server import BlackHoleServer

    with BlackHoleServer() as srv:
        yield srv
