"""Tunable limits, TTLs and thresholds for the fleet subsystem.

Every value defaults to the module-level constant in ``fleet_ssh_tools`` and
can be overridden with a ``FLEET_<NAME>`` environment variable, e.g.
``FLEET_FAILURE_THRESHOLD=5`` or ``FLEET_QUEUE_CONCURRENCY=8``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Mapping, Optional

from . import (
    AGGREGATED_METRICS_TTL,
    BACKOFF_BASE_DELAY,
    COMMAND_TIMEOUT,
    COMPLETED_RETENTION_COUNT,
    COMPLETED_RETENTION_SECONDS,
    CONFIG_CACHE_TTL,
    CONNECTION_TIMEOUT,
    FAILED_RETENTION_COUNT,
    FAILED_RETENTION_SECONDS,
    FAILURE_COUNT_TTL,
    FAILURE_THRESHOLD,
    JOB_ATTEMPTS,
    KEEPALIVE_INTERVAL,
    LATEST_METRICS_TTL,
    MAX_SESSIONS_PER_TARGET,
    POOL_ACQUIRE_TIMEOUT,
    QUEUE_CONCURRENCY,
    SESSION_IDLE_TIMEOUT,
    SESSION_SWEEP_INTERVAL,
    TEST_STAGE_TIMEOUT,
)

logger = logging.getLogger("fleet_ssh_tools.settings")

ENV_PREFIX = "FLEET_"


@dataclasses.dataclass(frozen=True)
class Settings:
    """Runtime configuration; all durations are seconds."""

    connection_timeout: float = CONNECTION_TIMEOUT
    test_stage_timeout: float = TEST_STAGE_TIMEOUT
    command_timeout: float = COMMAND_TIMEOUT
    keepalive_interval: int = KEEPALIVE_INTERVAL

    max_sessions_per_target: int = MAX_SESSIONS_PER_TARGET
    pool_acquire_timeout: float = POOL_ACQUIRE_TIMEOUT
    session_idle_timeout: float = SESSION_IDLE_TIMEOUT
    session_sweep_interval: float = SESSION_SWEEP_INTERVAL
    config_cache_ttl: float = CONFIG_CACHE_TTL

    latest_metrics_ttl: float = LATEST_METRICS_TTL
    aggregated_metrics_ttl: float = AGGREGATED_METRICS_TTL

    failure_count_ttl: float = FAILURE_COUNT_TTL
    failure_threshold: int = FAILURE_THRESHOLD

    queue_concurrency: int = QUEUE_CONCURRENCY
    job_attempts: int = JOB_ATTEMPTS
    backoff_base_delay: float = BACKOFF_BASE_DELAY
    completed_retention_seconds: float = COMPLETED_RETENTION_SECONDS
    completed_retention_count: int = COMPLETED_RETENTION_COUNT
    failed_retention_seconds: float = FAILED_RETENTION_SECONDS
    failed_retention_count: int = FAILED_RETENTION_COUNT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """Build settings from ``FLEET_*`` variables, falling back to defaults.

        Raises:
            ValueError: If a variable is set but cannot be converted.
        """
        environ = os.environ if environ is None else environ
        overrides = {}

        for field in dataclasses.fields(cls):
            env_key = f"{ENV_PREFIX}{field.name.upper()}"
            raw = environ.get(env_key)
            if raw is None or raw == "":
                continue

            converter = int if field.type in ("int", int) else float
            try:
                value = converter(raw)
            except ValueError as exc:
                raise ValueError(f"{env_key} must be a number, got {raw!r}") from exc
            if value < 0:
                raise ValueError(f"{env_key} must not be negative, got {raw!r}")

            overrides[field.name] = value
            logger.debug("[SETTINGS] %s overridden from environment: %s", field.name, value)

        return cls(**overrides)
