"""High-level command execution against pooled target sessions."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from . import COMMAND_TIMEOUT
from .executor import CommandExecutor
from .models import CommandResult
from .pool import SessionPool
from .types import PoolStats

logger = logging.getLogger("fleet_ssh_tools.manager")


class SessionManager:
    """Borrows one pooled session per call and runs commands on it."""

    def __init__(
        self,
        pool: SessionPool,
        executor: Optional[CommandExecutor] = None,
        command_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.pool = pool
        self.executor = executor or CommandExecutor()
        self.command_timeout = command_timeout

    def execute_command(
        self,
        target_id: str,
        command: str,
        timeout: Optional[float] = None,
        stdin_data: Optional[str] = None,
    ) -> CommandResult:
        """Run one command on *target_id*.

        Raises:
            PoolExhaustedError: If no session could be borrowed in time
            SSHConnectionError: If a new session could not be opened
            TargetGoneError: If the target no longer exists
        """
        timeout = self.command_timeout if timeout is None else timeout
        with self.pool.session(target_id) as session:
            session.command_count += 1
            return self.executor.run(
                session.connection,
                command,
                context=f"target {target_id}",
                timeout=timeout,
                stdin_data=stdin_data,
            )

    def execute_commands(
        self,
        target_id: str,
        commands: Sequence[str],
        timeout: Optional[float] = None,
    ) -> List[CommandResult]:
        """Run *commands* in order on one session, stopping after the first failure."""
        timeout = self.command_timeout if timeout is None else timeout
        results: List[CommandResult] = []
        with self.pool.session(target_id) as session:
            for command in commands:
                session.command_count += 1
                result = self.executor.run(
                    session.connection, command, context=f"target {target_id}", timeout=timeout
                )
                results.append(result)
                if not result.success:
                    logger.info(
                        "[EXEC] target %s: stopping after failed command %d/%d",
                        target_id, len(results), len(commands),
                    )
                    break
        return results

    def execute_batch(
        self,
        target_id: str,
        commands: Sequence[str],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run *commands* as one ``&&``-joined command line."""
        return self.execute_command(target_id, " && ".join(commands), timeout)

    def close_target_sessions(self, target_id: str) -> int:
        return self.pool.close_target(target_id)

    def stats(self) -> PoolStats:
        return self.pool.stats()
