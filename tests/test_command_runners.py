"""Tests for external command execution and cancellation."""

import subprocess
from unittest.mock import Mock

import pytest

from boot_integrity.storage.command_runners import (
    CancellationToken,
    run_command,
)
from boot_integrity.storage.exceptions import (
    ExternalToolError,
    OperationCancelledError,
)


class TestRunCommand:
    """Tests for run_command function."""

    def test_passes_options_to_subprocess(self, mock_subprocess_run, tmp_path):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="ok", stderr="")

        result = run_command(
            ["magiskboot", "unpack", "boot.img"],
            cwd=tmp_path,
            timeout=60,
            env={"KEEPVERITY": "true"},
        )

        assert result.stdout == "ok"
        args, kwargs = mock_subprocess_run.call_args
        assert args[0] == ["magiskboot", "unpack", "boot.img"]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["timeout"] == 60
        assert kwargs["env"] == {"KEEPVERITY": "true"}
        assert kwargs["capture_output"] is True
        assert kwargs["text"] is True

    def test_non_zero_exit_is_returned(self, mock_subprocess_run):
        """run_command leaves status checking to the caller."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="", stderr="boom")
        assert run_command(["false"]).returncode == 1

    def test_missing_binary(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = FileNotFoundError("No such file")

        with pytest.raises(ExternalToolError, match="Command not found: magiskboot") as exc_info:
            run_command(["magiskboot", "cleanup"])
        assert exc_info.value.command == ["magiskboot", "cleanup"]

    def test_timeout(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.TimeoutExpired(["adb"], 30)

        with pytest.raises(ExternalToolError, match="timed out after 30 seconds"):
            run_command(["adb", "shell", "true"], timeout=30)

    def test_cancelled_token_prevents_start(self, mock_subprocess_run):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            run_command(["fastboot", "getvar", "all"], cancel_token=token)
        mock_subprocess_run.assert_not_called()

    def test_live_token_runs(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")
        run_command(["true"], cancel_token=CancellationToken())
        mock_subprocess_run.assert_called_once()


class TestCancellationToken:
    def test_initial_state(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled("patch")

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled is True
        with pytest.raises(OperationCancelledError, match="patch cancelled"):
            token.raise_if_cancelled("patch")
