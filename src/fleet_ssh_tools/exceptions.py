"""Custom exceptions for SSH fleet operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import TransportErrorKind


class FleetSSHToolsError(Exception):
    """Common base exception for all fleet_ssh_tools errors.

    Attributes:
        retryable: Whether the scheduling queue may retry the job that raised it.
    """

    retryable = True


class CommandValidationError(FleetSSHToolsError):
    """Exception for commands rejected by the security filter."""

    retryable = False

    def __init__(self, message: str, *, command: str, reason: str) -> None:
        super().__init__(message)
        self.command = command
        self.reason = reason


class SSHConnectionError(FleetSSHToolsError):
    """Exception for SSH connection errors (DNS, TCP, handshake).

    Attributes:
        kind: Classified transport error category, when known.
    """

    def __init__(self, message: str, *, kind: Optional[TransportErrorKind] = None) -> None:
        super().__init__(message)
        self.kind = kind


class SSHTimeoutError(SSHConnectionError):
    """Exception for SSH connection timeouts."""
    pass


class SSHAuthenticationError(SSHConnectionError):
    """Exception for rejected SSH credentials."""
    pass


class HostKeyMismatchError(SSHConnectionError):
    """Exception for a server key that does not match the pinned fingerprints."""

    retryable = False

    def __init__(self, message: str, *, fingerprint: str) -> None:
        super().__init__(message)
        self.fingerprint = fingerprint


class SSHCommandError(FleetSSHToolsError):
    """Exception for a remote command that failed, timed out or could not run.

    Attributes:
        command: The command line that was sent.
        exit_code: Remote exit status, 124 on timeout, None if it never ran.
        error: Sanitized stderr or failure description.
    """

    def __init__(
        self, message: str, *, command: str, exit_code: Optional[int] = None, error: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.error = error


class PrivilegeEscalationError(FleetSSHToolsError):
    """Exception for failed sudo probes. Reported as a warning, never fatal."""
    pass


class PoolExhaustedError(FleetSSHToolsError):
    """Exception for a full, fully-busy session pool that did not free up in time."""
    pass


class CredentialError(FleetSSHToolsError):
    """Exception for missing or undecryptable credential material."""

    retryable = False


class TargetGoneError(FleetSSHToolsError):
    """Exception for a target record that no longer exists."""

    retryable = False

    def __init__(self, message: str, *, target_id: str) -> None:
        super().__init__(message)
        self.target_id = target_id


class ConnectionTestInProgressError(FleetSSHToolsError):
    """Exception for a second connection test against a target already under test."""

    retryable = False

    def __init__(self, message: str, *, target_id: str) -> None:
        super().__init__(message)
        self.target_id = target_id


class UnsupportedPlatformError(FleetSSHToolsError):
    """Exception for targets whose platform has no metrics collector."""

    retryable = False


class CircuitOpenError(FleetSSHToolsError):
    """Exception raised when consecutive failures disable a target's collection.

    Attributes:
        failure_count: Consecutive failures that tripped the breaker.
    """

    retryable = False

    def __init__(self, message: str, *, target_id: str, failure_count: int) -> None:
        super().__init__(message)
        self.target_id = target_id
        self.failure_count = failure_count
