"""Remote command execution with deadlines, error classification and output masking."""

from __future__ import annotations

import logging
import re
import time
from typing import List, Optional, Pattern, Tuple

import paramiko
from typeguard import typechecked

from . import COMMAND_TIMEOUT
from .connection import SSHConnection, classify_transport_error
from .exceptions import SSHConnectionError
from .models import CommandResult, TransportErrorKind
from .validator import CommandValidator

logger = logging.getLogger("fleet_ssh_tools.executor")

TIMEOUT_EXIT_CODE = 124
_RECV_CHUNK = 32768
_POLL_INTERVAL = 0.01

_SECRET_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), "password=***"),
    (
        re.compile(r"-----BEGIN [A-Z ]*KEY-----[\s\S]*?-----END [A-Z ]*KEY-----"),
        "***SSH_KEY***",
    ),
    (re.compile(r"token[=:]\s*\S+", re.IGNORECASE), "token=***"),
    (re.compile(r"api[-_]?key[=:]\s*\S+", re.IGNORECASE), "api_key=***"),
    (re.compile(r"\b[A-Z_]+_SECRET[=:]\s*\S+"), "SECRET=***"),
    (re.compile(r"\b[A-Z_]+_PASSWORD[=:]\s*\S+"), "PASSWORD=***"),
    (re.compile(r"\b[A-Z_]+_KEY[=:]\s*\S+"), "KEY=***"),
)


def sanitize_output(text: str) -> str:
    """Mask credentials, tokens and private keys in command output."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


@typechecked
class CommandExecutor:
    """Runs single commands over an established ``SSHConnection``.

    Network, channel and timeout problems are reported in the returned
    ``CommandResult`` instead of being raised.
    """

    def __init__(self, validator: Optional[CommandValidator] = None) -> None:
        self.validator = validator or CommandValidator()

    def run(
        self,
        connection: SSHConnection,
        command: str,
        context: str,
        timeout: float = COMMAND_TIMEOUT,
        stdin_data: Optional[str] = None,
    ) -> CommandResult:
        """Execute *command* and collect its output.

        Args:
            connection: Connected SSH connection to run on
            command: Shell command line
            context: Description of the purpose, embedded into log lines
            timeout: Hard deadline in seconds for the whole command
            stdin_data: Text written to the command's stdin, then EOF

        Returns:
            CommandResult; ``exit_code`` is 124 when the deadline expired.
        """
        host = connection.hostname
        port = connection.port

        verdict = self.validator.validate(command)
        if not verdict.valid:
            logger.warning(
                "[EXEC] [%s] Rejected command for %s:%d — %s", context, host, port, verdict.reason
            )
            return CommandResult(success=False, error=f"Command rejected: {verdict.reason}")

        logger.info("[EXEC] [%s] Running on %s:%d — %r", context, host, port, command)

        channel: Optional[paramiko.Channel] = None
        try:
            channel = connection.open_channel(timeout=timeout)
            channel.exec_command(command)

            if stdin_data is not None:
                channel.sendall(stdin_data.encode("utf-8"))
                channel.shutdown_write()

            exit_code, stdout_output, stderr_output = self._drain(channel, timeout)

        except SSHConnectionError as e:
            logger.error("[EXEC] [%s] Not runnable on %s:%d — %s", context, host, port, e)
            return CommandResult(success=False, error=str(e))
        except (paramiko.SSHException, OSError, EOFError) as e:
            kind, friendly = classify_transport_error(e, host, port)
            logger.error(
                "[EXEC] [%s] SSH ERROR on %s:%d (%s) — %s", context, host, port, kind.value, e
            )
            return CommandResult(success=False, error=friendly)
        finally:
            if channel is not None:
                channel.close()

        if exit_code is None:
            logger.warning(
                "[EXEC] [%s] TIMEOUT on %s:%d after %.1fs — %r", context, host, port, timeout, command
            )
            return CommandResult(
                success=False,
                output=sanitize_output(stdout_output) or None,
                error=f"Command timeout after {timeout:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )

        logger.info(
            "[EXEC] [%s] Completed on %s:%d — rc=%d, stdout=%d bytes, stderr=%d bytes",
            context, host, port, exit_code, len(stdout_output), len(stderr_output),
        )

        output = sanitize_output(stdout_output)
        if exit_code == 0:
            return CommandResult(
                success=True,
                output=output,
                error=sanitize_output(stderr_output) or None,
                exit_code=0,
            )

        return CommandResult(
            success=False,
            output=output,
            error=sanitize_output(stderr_output).strip() or f"Command exited with code {exit_code}",
            exit_code=exit_code,
        )

    @staticmethod
    def _drain(channel: paramiko.Channel, timeout: float) -> Tuple[Optional[int], str, str]:
        """Read stdout/stderr until the exit status arrives or the deadline passes.

        Returns:
            (exit_code or None on timeout, stdout, stderr)

        Raises:
            SSHConnectionError: If the transport dies before the exit status arrives
        """
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        deadline = time.monotonic() + timeout

        while True:
            progressed = False
            while channel.recv_ready():
                stdout_chunks.append(channel.recv(_RECV_CHUNK))
                progressed = True
            while channel.recv_stderr_ready():
                stderr_chunks.append(channel.recv_stderr(_RECV_CHUNK))
                progressed = True

            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                exit_code: Optional[int] = channel.recv_exit_status()
                break

            transport = channel.get_transport()
            if transport is None or not transport.is_active():
                raise SSHConnectionError(
                    "Connection lost - server dropped the session before the command finished",
                    kind=TransportErrorKind.RESET,
                )

            if time.monotonic() >= deadline:
                exit_code = None
                break

            if not progressed:
                time.sleep(_POLL_INTERVAL)

        return (
            exit_code,
            b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )
