"""Static security filter for remote command strings."""

from __future__ import annotations

import dataclasses
import re
from typing import Optional, Pattern, Tuple

from typeguard import typechecked

from .exceptions import CommandValidationError

# Catastrophic or injection-style patterns. Everything else, including
# "&&", "||", ";", pipes and $(...) substitution, is allowed.
DANGEROUS_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rm\s+-rf\s+/(?!tmp|var/tmp)",  # recursive delete of / (except /tmp)
        r":\(\)\s*\{.*\|.*&\s*\}\s*;\s*:",  # fork bomb
        r">\s*/dev/sd[a-z]",  # direct disk writes
        r"dd\s+if=.*of=/dev",  # dd to devices
        r"mkfs",
        r"fdisk",
        r"shutdown|reboot|halt|poweroff",
        r"userdel|deluser",
        r"passwd.*root",
        r"chmod\s+777\s+/",
        r"curl.*\|\s*bash",
        r"wget.*\|\s*sh",
    )
)


@dataclasses.dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None


@typechecked
class CommandValidator:
    """Rejects null bytes, backtick substitution and dangerous command patterns.

    The check is pure; callers log rejections together with the target id.
    """

    def __init__(self, patterns: Tuple[Pattern[str], ...] = DANGEROUS_PATTERNS) -> None:
        self.patterns = patterns

    def validate(self, command: str) -> ValidationResult:
        """Check *command* against the filter.

        Returns:
            ValidationResult with ``valid=False`` and a reason on rejection.
        """
        if "\0" in command:
            return ValidationResult(False, "Null byte detected in command")

        if "`" in command:
            return ValidationResult(False, "Backtick command substitution detected")

        for pattern in self.patterns:
            if pattern.search(command):
                return ValidationResult(
                    False, f"Dangerous command pattern detected: {pattern.pattern}"
                )

        return ValidationResult(True)

    def validate_or_raise(self, command: str, context: str) -> None:
        """Like ``validate`` but raises on rejection.

        Raises:
            CommandValidationError: If the command is rejected.
        """
        result = self.validate(command)
        if not result.valid:
            raise CommandValidationError(
                f"[{context}] Command rejected: {result.reason}",
                command=command,
                reason=result.reason or "",
            )
