"""SSH connection management with staged handshake and host-key policies."""

from __future__ import annotations

import base64
import errno
import hashlib
import io
import logging
import socket
import threading
import time
from typing import List, Optional, Tuple

import paramiko

from . import KEEPALIVE_INTERVAL
from .exceptions import (
    CredentialError,
    HostKeyMismatchError,
    SSHAuthenticationError,
    SSHConnectionError,
    SSHTimeoutError,
)
from .models import AuthMethod, ConnectionConfig, HostKeyPolicy, TransportErrorKind

logger = logging.getLogger("fleet_ssh_tools.connection")

_REFUSED_ERRNOS = {errno.ECONNREFUSED}
_TIMEOUT_ERRNOS = {errno.ETIMEDOUT}
_RESET_ERRNOS = {errno.ECONNRESET, errno.EPIPE}
_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH}


def _key_types() -> List[type]:
    # DSSKey was removed in paramiko 4.x
    key_types = [paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey]
    if hasattr(paramiko, "DSSKey"):
        key_types.append(paramiko.DSSKey)
    return key_types


def load_private_key(key_text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key held in memory, trying each key type.

    Raises:
        CredentialError: If no key type can parse the material.
    """
    last_error: Optional[Exception] = None
    for key_class in _key_types():
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise CredentialError("Private key is encrypted but no passphrase was provided") from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
            continue

    raise CredentialError(f"Unable to load private key: {last_error}")


def fingerprint_sha256(key: paramiko.PKey) -> str:
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def fingerprint_md5(key: paramiko.PKey) -> str:
    return "MD5:" + ":".join(f"{b:02x}" for b in key.get_fingerprint())


def fingerprint_matches(key: paramiko.PKey, known: Tuple[str, ...]) -> bool:
    """True if either fingerprint form of *key* is among *known*."""
    return fingerprint_sha256(key) in known or fingerprint_md5(key) in known


def _exception_chain(exc: BaseException) -> List[BaseException]:
    chain = []
    current: Optional[BaseException] = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def classify_transport_error(
    exc: BaseException, host: str, port: int
) -> Tuple[TransportErrorKind, str]:
    """Map a low-level transport failure to a category and an operator-friendly message."""
    for err in _exception_chain(exc):
        if isinstance(err, paramiko.AuthenticationException):
            return TransportErrorKind.AUTH_FAILED, "Authentication failed - check credentials"

        if isinstance(err, socket.gaierror):
            return (
                TransportErrorKind.HOST_NOT_FOUND,
                f"Host not found - check hostname/IP address: {host}",
            )

        if isinstance(err, paramiko.ssh_exception.NoValidConnectionsError):
            codes = {getattr(e, "errno", None) for e in err.errors.values()}
            if codes & _REFUSED_ERRNOS:
                return (
                    TransportErrorKind.REFUSED,
                    f"Connection refused - server may be down or SSH port {port} is blocked",
                )

        if isinstance(err, ConnectionRefusedError) or getattr(err, "errno", None) in _REFUSED_ERRNOS:
            return (
                TransportErrorKind.REFUSED,
                f"Connection refused - server may be down or SSH port {port} is blocked",
            )

        if isinstance(err, ConnectionResetError) or getattr(err, "errno", None) in _RESET_ERRNOS:
            return (
                TransportErrorKind.RESET,
                "Connection reset - network issue or server dropped connection",
            )

        if isinstance(err, (socket.timeout, TimeoutError)) or getattr(err, "errno", None) in _TIMEOUT_ERRNOS:
            return (
                TransportErrorKind.TIMED_OUT,
                "Connection timed out - check network connectivity and firewall rules",
            )

        if getattr(err, "errno", None) in _UNREACHABLE_ERRNOS:
            return (
                TransportErrorKind.TIMED_OUT,
                f"Host unreachable - check routing to {host}",
            )

    text = str(exc).lower()
    if "keepalive" in text:
        return (
            TransportErrorKind.KEEPALIVE_LOST,
            "Connection lost - keepalive timeout (server may be overloaded)",
        )
    if isinstance(exc, EOFError) or "banner" in text or "closed" in text:
        return (
            TransportErrorKind.HANDSHAKE_CLOSED,
            "Connection closed before handshake completed",
        )

    return TransportErrorKind.UNKNOWN, str(exc) or exc.__class__.__name__


class SSHConnection:
    """One live SSH transport to a target.

    The handshake is exposed as separate steps (``open_socket``,
    ``start_handshake``, ``authenticate``) so diagnostics can time each one;
    ``connect`` runs them all and enforces the configured host-key policy.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        keepalive_interval: int = KEEPALIVE_INTERVAL,
    ) -> None:
        """Initialize an unconnected SSH connection.

        Args:
            config: Decrypted connection parameters
            keepalive_interval: Seconds between transport keepalives (0 disables)
        """
        self.config = config
        self.keepalive_interval = keepalive_interval
        self.sock: Optional[socket.socket] = None
        self.transport: Optional[paramiko.Transport] = None

    @property
    def hostname(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    def _raise_classified(self, exc: BaseException, context: str, stage: str) -> None:
        kind, friendly = classify_transport_error(exc, self.config.host, self.config.port)
        msg = f"[{context}] {stage} to {self.config.host}:{self.config.port} failed: {friendly}"
        logger.error("[CONNECT] %s FAILED (%s) — %s", stage.upper(), kind.value, msg)
        if kind is TransportErrorKind.AUTH_FAILED:
            raise SSHAuthenticationError(msg, kind=kind) from exc
        if kind is TransportErrorKind.TIMED_OUT:
            raise SSHTimeoutError(msg, kind=kind) from exc
        raise SSHConnectionError(msg, kind=kind) from exc

    def open_socket(self, context: str) -> None:
        """Open the TCP connection.

        Raises:
            SSHConnectionError: If the socket cannot be connected
            SSHTimeoutError: If the connect times out
        """
        logger.debug(
            "[CONNECT] [%s] Opening TCP socket to %s:%d (timeout=%.1fs)",
            context, self.config.host, self.config.port, self.config.timeout,
        )
        try:
            self.sock = socket.create_connection(
                (self.config.host, self.config.port), timeout=self.config.timeout
            )
        except OSError as exc:
            self._raise_classified(exc, context, "TCP connect")

    def start_handshake(self, context: str) -> paramiko.PKey:
        """Negotiate the SSH protocol over the open socket.

        Returns:
            The server's host key.

        Raises:
            SSHConnectionError: If negotiation fails or the peer closes
            SSHTimeoutError: If negotiation does not finish within the timeout
        """
        if self.sock is None:
            raise SSHConnectionError(f"[{context}] Handshake requested before the socket was opened")

        timeout = self.config.timeout
        try:
            transport = paramiko.Transport(self.sock)
            transport.banner_timeout = timeout
            transport.handshake_timeout = timeout
            transport.auth_timeout = timeout
            self.transport = transport

            done = threading.Event()
            transport.start_client(event=done)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise_classified(exc, context, "SSH handshake")

        if not done.wait(timeout):
            msg = (
                f"[{context}] SSH handshake with {self.config.host}:{self.config.port} "
                f"timed out after {timeout:.1f}s"
            )
            logger.error("[CONNECT] HANDSHAKE TIMEOUT — %s", msg)
            raise SSHTimeoutError(msg, kind=TransportErrorKind.TIMED_OUT)

        if not transport.is_active():
            failure = transport.get_exception() or paramiko.SSHException("Negotiation failed.")
            self._raise_classified(failure, context, "SSH handshake")

        return transport.get_remote_server_key()

    def check_host_key(self, key: paramiko.PKey, context: str) -> Optional[bool]:
        """Apply the configured host-key policy to *key*.

        Returns:
            True when the key matched a stored fingerprint, False on mismatch,
            None when no comparison was made (DISABLED, or TOFU first use).
        """
        policy = self.config.host_key_policy
        known = self.config.known_fingerprints

        if policy is HostKeyPolicy.DISABLED:
            logger.warning(
                "[HOSTKEY] [%s] Host key verification disabled for %s", context, self.config.host
            )
            return None

        if policy is HostKeyPolicy.TOFU and not known:
            logger.warning(
                "[HOSTKEY] [%s] First use of %s — accepting %s %s",
                context, self.config.host, key.get_name(), fingerprint_sha256(key),
            )
            return None

        return fingerprint_matches(key, known)

    def authenticate(self, context: str) -> None:
        """Authenticate with the configured key or password.

        Raises:
            SSHAuthenticationError: If the server rejects the credentials
            CredentialError: If the key material cannot be parsed
        """
        if self.transport is None:
            raise SSHConnectionError(f"[{context}] Authentication requested before the handshake")

        cfg = self.config
        try:
            if cfg.auth_method is AuthMethod.PASSWORD:
                if cfg.password is None:
                    raise CredentialError(f"[{context}] No password configured for {cfg.address}")
                self.transport.auth_password(cfg.username, cfg.password)
            else:
                if cfg.private_key is None:
                    raise CredentialError(f"[{context}] No private key configured for {cfg.address}")
                pkey = load_private_key(cfg.private_key, cfg.passphrase)
                self.transport.auth_publickey(cfg.username, pkey)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise_classified(exc, context, "Authentication")

        if self.keepalive_interval:
            self.transport.set_keepalive(self.keepalive_interval)

    def connect(self, context: str) -> None:
        """Establish and authenticate the connection in one call.

        Raises:
            SSHConnectionError: If any stage fails
            HostKeyMismatchError: If the server key contradicts the pinned keys
        """
        logger.info(
            "[CONNECT] [%s] Attempting SSH connection to %s (timeout=%.1fs) ...",
            context, self.config.address, self.config.timeout,
        )
        start_time = time.monotonic()
        try:
            self.open_socket(context)
            key = self.start_handshake(context)
            if self.check_host_key(key, context) is False:
                fingerprint = fingerprint_sha256(key)
                raise HostKeyMismatchError(
                    f"[{context}] Host key for {self.config.host} does not match any stored "
                    f"fingerprint (received {fingerprint}) - possible MITM",
                    fingerprint=fingerprint,
                )
            self.authenticate(context)
        except BaseException:
            self.disconnect()
            raise

        logger.info(
            "[CONNECT] [%s] Connected to %s in %.2fs",
            context, self.config.address, time.monotonic() - start_time,
        )

    def is_connected(self) -> bool:
        """Check if the SSH transport is active and authenticated."""
        return (
            self.transport is not None
            and self.transport.is_active()
            and self.transport.is_authenticated()
        )

    def open_channel(self, timeout: Optional[float] = None) -> paramiko.Channel:
        """Open a new session channel on the transport.

        Raises:
            SSHConnectionError: If the connection is not active
        """
        if not self.is_connected():
            raise SSHConnectionError(
                f"Cannot open channel: not connected to {self.config.host}:{self.config.port}"
            )
        return self.transport.open_session(timeout=timeout)  # type: ignore[union-attr]

    def disconnect(self) -> None:
        """Close the transport and socket if open."""
        was_connected = self.is_connected()
        target = self.config.address

        if self.transport is not None:
            try:
                self.transport.close()
            except Exception as exc:
                logger.warning("[DISCONNECT] Error closing transport to %s: %s", target, exc)
            finally:
                self.transport = None

        if self.sock is not None:
            try:
                self.sock.close()
            except OSError as exc:
                logger.warning("[DISCONNECT] Error closing socket to %s: %s", target, exc)
            finally:
                self.sock = None

        if was_connected:
            logger.info("[DISCONNECT] Disconnected from %s", target)
        else:
            logger.debug("[DISCONNECT] disconnect() called on already-closed connection to %s", target)

    def __enter__(self) -> SSHConnection:
        self.connect(context=f"Connecting to {self.config.host}:{self.config.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.disconnect()

    def __del__(self) -> None:
        try:
            self.disconnect()
        except Exception:
            pass


def open_connection(
    config: ConnectionConfig, context: str, keepalive_interval: int = KEEPALIVE_INTERVAL
) -> SSHConnection:
    """Create and connect an ``SSHConnection``; the pool's default connector."""
    connection = SSHConnection(config, keepalive_interval=keepalive_interval)
    connection.connect(context)
    return connection
