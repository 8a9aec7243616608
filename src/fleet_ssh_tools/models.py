"""Value objects shared across the fleet subsystem."""

from __future__ import annotations

import dataclasses
import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import (
    COMMAND_TIMEOUT,
    CONNECTION_TIMEOUT,
    DEFAULT_CPU_THRESHOLD,
    DEFAULT_DISK_THRESHOLD,
    DEFAULT_METRICS_INTERVAL,
    DEFAULT_RAM_THRESHOLD,
    SSH_PORT,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthMethod(str, enum.Enum):
    KEY = "SSH_KEY"
    KEY_WITH_PASSPHRASE = "SSH_KEY_WITH_PASSPHRASE"
    PASSWORD = "PASSWORD"


class HostKeyPolicy(str, enum.Enum):
    STRICT_PINNED = "STRICT_PINNED"
    TOFU = "TOFU"
    DISABLED = "DISABLED"


class SudoMode(str, enum.Enum):
    NONE = "NONE"
    NOPASSWD = "NOPASSWD"
    PASSWORD_REQUIRED = "PASSWORD_REQUIRED"


class PlatformType(str, enum.Enum):
    LINUX = "LINUX"
    WINDOWS = "WINDOWS"


class TriggerKind(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    RETRY = "RETRY"


class Severity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TransportErrorKind(str, enum.Enum):
    """Operator-facing categories for transport-level failures."""

    REFUSED = "refused"
    TIMED_OUT = "timed_out"
    HOST_NOT_FOUND = "host_not_found"
    RESET = "reset"
    KEEPALIVE_LOST = "keepalive_lost"
    AUTH_FAILED = "auth_failed"
    HANDSHAKE_CLOSED = "handshake_closed"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class KnownHostFingerprint:
    """A pinned or TOFU-recorded server key fingerprint."""
    key_type: str
    fingerprint: str
    first_seen_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class AuthMaterial:
    """Encrypted credential blobs; only the credential collaborator can read them."""
    encrypted_private_key: Optional[str] = None
    encrypted_passphrase: Optional[str] = None
    encrypted_password: Optional[str] = None


@dataclasses.dataclass
class TargetRecord:
    """A managed server as stored by the persistence collaborator."""

    id: str
    name: str
    host: str
    username: str
    auth_method: AuthMethod
    auth_material: AuthMaterial
    port: int = SSH_PORT
    platform_type: PlatformType = PlatformType.LINUX
    metrics_enabled: bool = False
    metrics_interval_seconds: int = DEFAULT_METRICS_INTERVAL
    alert_cpu_threshold: float = DEFAULT_CPU_THRESHOLD
    alert_ram_threshold: float = DEFAULT_RAM_THRESHOLD
    alert_disk_threshold: float = DEFAULT_DISK_THRESHOLD
    host_key_policy: HostKeyPolicy = HostKeyPolicy.TOFU
    known_fingerprints: List[KnownHostFingerprint] = dataclasses.field(default_factory=list)
    sudo_mode: SudoMode = SudoMode.NONE
    encrypted_sudo_password: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ConnectionConfig:
    """Decrypted, ready-to-dial connection parameters for one target."""

    host: str
    port: int
    username: str
    auth_method: AuthMethod
    private_key: Optional[str] = dataclasses.field(default=None, repr=False)
    passphrase: Optional[str] = dataclasses.field(default=None, repr=False)
    password: Optional[str] = dataclasses.field(default=None, repr=False)
    timeout: float = CONNECTION_TIMEOUT
    host_key_policy: HostKeyPolicy = HostKeyPolicy.TOFU
    known_fingerprints: Tuple[str, ...] = ()

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command."""
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None


@dataclasses.dataclass
class MetricsSnapshot:
    """One point-in-time metrics collection for a target, successful or not."""

    target_id: str
    cpu_usage_percent: float = 0.0
    cpu_cores: int = 0
    load_average_1m: float = 0.0
    load_average_5m: float = 0.0
    load_average_15m: float = 0.0
    memory_total_mb: int = 0
    memory_used_mb: int = 0
    memory_free_mb: int = 0
    memory_available_mb: int = 0
    memory_usage_percent: float = 0.0
    swap_total_mb: int = 0
    swap_used_mb: int = 0
    swap_usage_percent: float = 0.0
    disk_total_gb: float = 0.0
    disk_used_gb: float = 0.0
    disk_free_gb: float = 0.0
    disk_usage_percent: float = 0.0
    network_rx_total_mb: float = 0.0
    network_tx_total_mb: float = 0.0
    uptime_seconds: int = 0
    process_count: int = 0
    detected_os: Optional[str] = None
    kernel_version: Optional[str] = None
    collection_success: bool = True
    collection_latency_ms: int = 0
    collection_error: Optional[str] = None
    collected_at: datetime = dataclasses.field(default_factory=utcnow)

    @classmethod
    def failed(cls, target_id: str, error: str, latency_ms: int) -> MetricsSnapshot:
        """Zeroed snapshot recording a failed collection attempt."""
        return cls(
            target_id=target_id,
            collection_success=False,
            collection_latency_ms=latency_ms,
            collection_error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(frozen=True)
class AggregatedMetrics:
    """Cross-target averages and totals over the latest snapshots."""
    avg_cpu_usage: float
    avg_memory_usage: float
    avg_disk_usage: float
    total_targets: int
    targets_with_metrics: int
    total_storage_gb: float
    used_storage_gb: float
    total_network_rx_mb: float
    total_network_tx_mb: float


@dataclasses.dataclass(frozen=True)
class Event:
    """Audit-visible record handed to the event sink."""
    kind: str
    severity: Severity
    target_id: str
    description: str
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: datetime = dataclasses.field(default_factory=utcnow)
