"""Tests for ProcessRunner."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from spacelink.core.errors import CommandTimeout, ExecutionFailed, ToolMissing
from spacelink.services.process import CommandResult, ProcessRunner


class TestCommandResult:
    def test_ok_reflects_exit_code(self) -> None:
        assert CommandResult(stdout="", stderr="", exit_code=0).ok
        assert not CommandResult(stdout="", stderr="", exit_code=1).ok

    def test_output_joins_streams(self) -> None:
        result = CommandResult(stdout="out\n", stderr="err\n", exit_code=0)

        assert "out" in result.output
        assert "err" in result.output


class TestProcessRunnerRun:
    """Test ProcessRunner.run error mapping."""

    def test_returns_captured_output_for_non_zero_exit(self) -> None:
        """Non-zero exit codes are returned, not raised."""
        runner = ProcessRunner(platform="linux")
        completed = MagicMock(stdout="partial", stderr="boom", returncode=3)

        with (
            patch("shutil.which", return_value="/usr/bin/aws"),
            patch("subprocess.run", return_value=completed) as mock_run,
        ):
            result = runner.run("aws", ["--version"], timeout=5)

        assert result == CommandResult(stdout="partial", stderr="boom", exit_code=3)
        argv = mock_run.call_args[0][0]
        assert argv == ["/usr/bin/aws", "--version"]
        assert mock_run.call_args[1]["timeout"] == 5

    def test_missing_executable_raises_tool_missing(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value=None),
            patch("subprocess.run", side_effect=FileNotFoundError("aws")),
        ):
            with pytest.raises(ToolMissing) as exc_info:
                runner.run("aws")

        assert exc_info.value.tool == "aws"

    def test_timeout_raises_command_timeout(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value="/usr/bin/ssh"),
            patch("subprocess.run", side_effect=subprocess.TimeoutExpired("ssh", 10)),
        ):
            with pytest.raises(CommandTimeout) as exc_info:
                runner.run("ssh", ["host", "true"], timeout=10)

        assert exc_info.value.timeout == 10

    def test_os_error_raises_execution_failed(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value="/usr/bin/ssh"),
            patch("subprocess.run", side_effect=PermissionError("denied")),
        ):
            with pytest.raises(ExecutionFailed):
                runner.run("ssh")


class TestProcessRunnerResolve:
    """Test executable resolution and caching."""

    def test_windows_candidates_take_precedence_over_path(self) -> None:
        runner = ProcessRunner(platform="win32")

        with (
            patch("os.path.exists", side_effect=lambda p: p.endswith("OpenSSH\\ssh.exe")),
            patch("shutil.which", return_value="C:\\tools\\ssh.exe") as mock_which,
        ):
            resolved = runner.resolve("ssh")

        assert resolved.endswith("OpenSSH\\ssh.exe")
        mock_which.assert_not_called()

    def test_falls_back_to_bare_name(self) -> None:
        runner = ProcessRunner(platform="linux")

        with patch("shutil.which", return_value=None):
            assert runner.resolve("session-manager-plugin") == "session-manager-plugin"

    def test_resolution_is_cached(self) -> None:
        runner = ProcessRunner(platform="linux")

        with patch("shutil.which", return_value="/usr/bin/ssh") as mock_which:
            runner.resolve("ssh")
            runner.resolve("ssh")
            ProcessRunner(platform="linux").resolve("ssh")

        assert mock_which.call_count == 1

    def test_absolute_paths_are_returned_unchanged(self) -> None:
        runner = ProcessRunner(platform="linux")

        with patch("shutil.which") as mock_which:
            assert runner.resolve("/opt/bin/aws") == "/opt/bin/aws"

        mock_which.assert_not_called()


class TestProcessRunnerAvailability:
    def test_is_available_true_on_success(self) -> None:
        runner = ProcessRunner(platform="linux")
        completed = MagicMock(stdout="aws-cli/2.15.0", stderr="", returncode=0)

        with (
            patch("shutil.which", return_value="/usr/bin/aws"),
            patch("subprocess.run", return_value=completed),
        ):
            assert runner.is_available("aws")

    def test_is_available_false_when_missing(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value=None),
            patch("subprocess.run", side_effect=FileNotFoundError()),
        ):
            assert not runner.is_available("aws")

    def test_is_available_false_on_failure_exit(self) -> None:
        runner = ProcessRunner(platform="linux")
        completed = MagicMock(stdout="", stderr="bad flag", returncode=2)

        with (
            patch("shutil.which", return_value="/usr/bin/aws"),
            patch("subprocess.run", return_value=completed),
        ):
            assert not runner.is_available("aws")


class TestProcessRunnerSpawn:
    def test_spawn_detaches_on_posix(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value="/usr/bin/cursor"),
            patch("subprocess.Popen") as mock_popen,
        ):
            runner.spawn("cursor", ["--new-window"])

        args, kwargs = mock_popen.call_args
        assert args[0] == ["/usr/bin/cursor", "--new-window"]
        assert kwargs["start_new_session"] is True

    def test_spawn_missing_executable(self) -> None:
        runner = ProcessRunner(platform="linux")

        with (
            patch("shutil.which", return_value=None),
            patch("subprocess.Popen", side_effect=FileNotFoundError()),
        ):
            with pytest.raises(ToolMissing):
                runner.spawn("cursor")
