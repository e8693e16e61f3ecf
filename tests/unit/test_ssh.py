"""Tests for RemoteChannel."""

import logging

import pytest

from spacelink.constants import FailureKind
from spacelink.core.errors import CommandTimeout, RemoteUnreachable
from spacelink.services.ssh import (
    CLEANUP_COMMAND,
    CONNECTION_OK_MARKER,
    INSTALL_CHECK_COMMAND,
    RemoteChannel,
    parse_install_markers,
)
from tests.fakes.fake_runner import FakeProcessRunner


class TestParseInstallMarkers:
    def test_nothing_installed(self) -> None:
        state = parse_install_markers(
            "CURSOR_DIR_NOT_FOUND\nVSCODE_DIR_NOT_FOUND\nSERVER_PROCESS_NOT_RUNNING\n"
        )

        assert not state.cursor_dir
        assert not state.vscode_dir
        assert not state.process_running
        assert not state.partially_installed
        assert state.details == "No server installation detected on remote host."

    def test_partial_install(self) -> None:
        state = parse_install_markers(
            "CURSOR_DIR_EXISTS\nVSCODE_DIR_NOT_FOUND\nSERVER_PROCESS_NOT_RUNNING\n"
        )

        assert state.cursor_dir
        assert not state.vscode_dir
        assert state.dir_exists
        assert state.partially_installed
        assert "~/.cursor-server" in state.details

    def test_markers_must_be_whole_lines(self) -> None:
        state = parse_install_markers("Welcome! CURSOR_DIR_EXISTS is a marker\n")

        assert not state.cursor_dir

    def test_running_process(self) -> None:
        state = parse_install_markers("SERVER_PROCESS_RUNNING\n")

        assert state.process_running
        assert state.partially_installed


class TestRemoteChannel:
    """Test remote command execution through the ssh client."""

    def test_execute_passes_alias_and_options(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stdout="hi\n")
        channel = RemoteChannel("sagemaker", runner=runner, timeout=7)

        result = channel.execute("echo hi")

        assert result.stdout == "hi\n"
        command, args = runner.calls[0]
        assert command == "ssh"
        assert args[-2:] == ["sagemaker", "echo hi"]
        assert "ConnectTimeout=7" in args
        assert runner.timeouts[0] == 7

    def test_exit_255_raises_remote_unreachable(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stderr="ssh: Could not resolve hostname\n", exit_code=255)
        channel = RemoteChannel("sagemaker", runner=runner)

        with pytest.raises(RemoteUnreachable) as exc_info:
            channel.execute("true")

        assert exc_info.value.host == "sagemaker"
        assert "Could not resolve hostname" in exc_info.value.detail

    def test_remote_failure_is_returned(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stderr="no such file", exit_code=2)

        result = RemoteChannel("sagemaker", runner=runner).execute("cat nothing")

        assert result.exit_code == 2

    def test_check_installation(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response(
            "ssh", stdout="CURSOR_DIR_NOT_FOUND\nVSCODE_DIR_EXISTS\nSERVER_PROCESS_RUNNING\n"
        )

        state = RemoteChannel("sagemaker", runner=runner).check_installation()

        assert state.vscode_dir
        assert state.process_running
        assert state.failure is None
        assert runner.calls[0][1][-1] == INSTALL_CHECK_COMMAND

    def test_check_installation_reports_unreachable_host(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response(
            "ssh", stderr="ssh: connect to host x port 22: Connection refused\n", exit_code=255
        )

        state = RemoteChannel("sagemaker", runner=runner).check_installation()

        assert state.failure == FailureKind.CONNECTION_REFUSED
        assert not state.partially_installed
        assert state.details.startswith("Could not check remote server installation")

    def test_check_installation_without_ssh(self) -> None:
        state = RemoteChannel("sagemaker", runner=FakeProcessRunner()).check_installation()

        assert state.failure == FailureKind.TOOL_MISSING

    def test_check_installation_timeout(self) -> None:
        runner = FakeProcessRunner()
        runner.add_error("ssh", CommandTimeout("ssh", 10))

        state = RemoteChannel("sagemaker", runner=runner).check_installation()

        assert state.failure == FailureKind.TIMEOUT

    def test_connection_test_succeeds_on_marker(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response(
            "ssh",
            stdout=f"{CONNECTION_OK_MARKER}\n",
            stderr="debug1: Connecting to sagemaker\ndebug1: Authenticated to sagemaker\n",
        )

        result = RemoteChannel("sagemaker", runner=runner).test_connection()

        assert result.ok
        assert result.failure is None
        assert "debug1: Authenticated to sagemaker" in result.lines
        assert "-v" in runner.calls[0][1]

    def test_connection_test_classifies_failure(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stderr="ssh: connect to host: Connection timed out\n", exit_code=255)

        result = RemoteChannel("sagemaker", runner=runner).test_connection()

        assert not result.ok
        assert result.failure == FailureKind.TIMEOUT

    def test_connection_test_without_ssh(self) -> None:
        result = RemoteChannel("sagemaker", runner=FakeProcessRunner()).test_connection()

        assert not result.ok
        assert result.failure == FailureKind.TOOL_MISSING

    def test_cleanup_server_dirs(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stdout="CLEANUP_SUCCESS\n")

        assert RemoteChannel("sagemaker", runner=runner).cleanup_server_dirs()
        assert runner.calls[0][1][-1] == CLEANUP_COMMAND

    def test_cleanup_server_dirs_failure(self) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stdout="CLEANUP_FAILED\n")

        assert not RemoteChannel("sagemaker", runner=runner).cleanup_server_dirs()

    def test_remote_output_logged_with_stream_tags(self, caplog: pytest.LogCaptureFixture) -> None:
        runner = FakeProcessRunner()
        runner.add_response("ssh", stdout="CLEANUP_SUCCESS\n", stderr="warning: banner\n")

        with caplog.at_level(logging.DEBUG, logger="spacelink.services.ssh"):
            RemoteChannel("sagemaker", runner=runner).execute("true")

        tagged = {(r.stream, r.getMessage()) for r in caplog.records if hasattr(r, "stream")}
        assert tagged == {("stdout", "CLEANUP_SUCCESS"), ("stderr", "warning: banner")}
        assert all(r.host == "sagemaker" for r in caplog.records if hasattr(r, "stream"))
