"""Tests for command.py - logged execution of external tools."""

import logging
import sys

import pytest

from chr_installer.command import format_argv, run_command
from chr_installer.errors import CommandError, DeviceError


class TestRunCommand:
    """Tests for run_command."""

    def test_captures_stdout(self):
        result = run_command([sys.executable, "-c", "print('hello')"])

        assert result.ok
        assert result.returncode == 0
        assert result.stdout == "hello\n"

    def test_feeds_input_text(self):
        """Input text should reach the command's stdin."""
        result = run_command(
            [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
            input_text=", +\n",
        )
        assert result.stdout.strip() == ", +"

    def test_failure_raises(self):
        """Non-zero exit should raise CommandError carrying stderr."""
        script = "import sys; sys.stderr.write('no such partition\\n'); sys.exit(3)"
        with pytest.raises(CommandError) as exc_info:
            run_command([sys.executable, "-c", script])

        assert exc_info.value.returncode == 3
        assert "no such partition" in exc_info.value.message
        assert isinstance(exc_info.value, DeviceError)

    def test_failure_without_check(self):
        """check=False should return the failed result."""
        result = run_command([sys.executable, "-c", "raise SystemExit(4)"], check=False)

        assert not result.ok
        assert result.returncode == 4

    def test_missing_command(self):
        with pytest.raises(CommandError) as exc_info:
            run_command(["chr-installer-no-such-tool"])
        assert exc_info.value.returncode == 127

    def test_timeout(self):
        with pytest.raises(CommandError) as exc_info:
            run_command(
                [sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2
            )
        assert "timed out" in exc_info.value.message

    def test_logs_command_line(self, caplog):
        """Every command line should be logged."""
        with caplog.at_level(logging.INFO, logger="chr_installer.command"):
            run_command([sys.executable, "-c", "pass"])
        assert any("CMD" in r.getMessage() for r in caplog.records)


class TestFormatArgv:
    def test_quotes_arguments(self):
        assert format_argv(["mount", "/dev/nbd0p2", "/mnt/a b"]) == (
            "mount /dev/nbd0p2 '/mnt/a b'"
        )
