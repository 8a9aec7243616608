"""
Fleet SSH Tools - SSH remote execution and metrics collection for server fleets

This package manages a fleet of remote Linux servers over SSH. It includes:

- **Command validation** blocking injection and catastrophic shell patterns
- **Connection diagnostics** walking DNS, TCP, host key, auth, sudo and commands
- **Session pooling** with bounded per-target pools and idle eviction
- **Metrics collection** with one batched script per target
- **Scheduling** with repeatable jobs, retry/backoff and a failure circuit breaker

Persistence, credential decryption and event recording are delegated to
collaborators (see ``fleet_ssh_tools.repository``).
"""

import logging
import os

logging.getLogger("fleet_ssh_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# CLI target inventory.
# Credentials are read from environment variables — no secrets in the codebase.
#   FLEET_TARGET_0_HOST / FLEET_TARGET_0_PORT / FLEET_TARGET_0_USER
#   FLEET_TARGET_0_PASS / FLEET_TARGET_0_KEY_FILE
DEFAULT_TARGET_COUNT = int(os.environ.get("FLEET_TARGET_COUNT", "2"))

# SSH port
SSH_PORT = 22

# Timeout settings (seconds)
CONNECTION_TIMEOUT = 30
TEST_STAGE_TIMEOUT = 25
COMMAND_TIMEOUT = 30
KEEPALIVE_INTERVAL = 10

# Session pool settings
MAX_SESSIONS_PER_TARGET = 10
POOL_ACQUIRE_TIMEOUT = 30
SESSION_IDLE_TIMEOUT = 300
SESSION_SWEEP_INTERVAL = 60
CONFIG_CACHE_TTL = 60

# Metrics cache settings
LATEST_METRICS_TTL = 3600
AGGREGATED_METRICS_TTL = 60

# Circuit breaker settings
FAILURE_COUNT_TTL = 86400
FAILURE_THRESHOLD = 10

# Scheduling queue settings
QUEUE_CONCURRENCY = 5
JOB_ATTEMPTS = 3
BACKOFF_BASE_DELAY = 5.0
COMPLETED_RETENTION_SECONDS = 3600
COMPLETED_RETENTION_COUNT = 100
FAILED_RETENTION_SECONDS = 86400
FAILED_RETENTION_COUNT = 500
DEFAULT_METRICS_INTERVAL = 900

# Alert threshold defaults (percent)
DEFAULT_CPU_THRESHOLD = 90.0
DEFAULT_RAM_THRESHOLD = 90.0
DEFAULT_DISK_THRESHOLD = 90.0
