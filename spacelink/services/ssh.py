"""Remote commands over the ssh client identified by host alias."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from spacelink.constants import (
    CONNECTION_TEST_TIMEOUT_SECONDS,
    REMOTE_COMMAND_TIMEOUT_SECONDS,
    SSH_UNREACHABLE_EXIT_CODE,
    FailureKind,
)
from spacelink.core.errors import (
    CommandTimeout,
    ExecutionFailed,
    RemoteUnreachable,
    ToolMissing,
    classify_failure,
)
from spacelink.services.process import CommandResult, ProcessRunner
from spacelink.utils import summarize_error_output

logger = logging.getLogger(__name__)

INSTALL_CHECK_COMMAND = (
    "test -d ~/.cursor-server && echo CURSOR_DIR_EXISTS || echo CURSOR_DIR_NOT_FOUND; "
    "test -d ~/.vscode-server && echo VSCODE_DIR_EXISTS || echo VSCODE_DIR_NOT_FOUND; "
    "if ps aux | grep -E '(cursor-server|vscode-server)' | grep -v grep > /dev/null; "
    "then echo SERVER_PROCESS_RUNNING; else echo SERVER_PROCESS_NOT_RUNNING; fi"
)

LIST_SERVER_DIRS_COMMAND = (
    "echo 'CONNECTION_TEST'; ls -la ~/.cursor-server ~/.vscode-server 2>&1 | head -5"
)

CLEANUP_COMMAND = (
    "rm -rf ~/.cursor-server ~/.vscode-server && echo CLEANUP_SUCCESS || echo CLEANUP_FAILED"
)

CONNECTION_OK_MARKER = "SSH_CONNECTION_OK"


@dataclass
class RemoteInstallState:
    """Editor server installation state on the remote host.

    Attributes
    ----------
    cursor_dir : bool
        Whether ``~/.cursor-server`` exists
    vscode_dir : bool
        Whether ``~/.vscode-server`` exists
    process_running : bool
        Whether an editor server process is running
    details : str
        Human readable summary
    failure : FailureKind | None
        Set when the remote host could not be observed
    """

    cursor_dir: bool = False
    vscode_dir: bool = False
    process_running: bool = False
    details: str = ""
    failure: FailureKind | None = None

    @property
    def dir_exists(self) -> bool:
        return self.cursor_dir or self.vscode_dir

    @property
    def partially_installed(self) -> bool:
        return self.dir_exists or self.process_running


@dataclass
class ConnectionTestResult:
    """Outcome of the verbose initial SSH connection test."""

    ok: bool
    output: str = ""
    failure: FailureKind | None = None
    lines: list[str] = field(default_factory=list)


def parse_install_markers(output: str) -> RemoteInstallState:
    """Parse marker lines printed by the installation check command.

    Markers are compared line by line so ``..._NOT_FOUND`` never counts as
    ``..._EXISTS`` and banner text cannot fake a marker.

    Parameters
    ----------
    output : str
        Remote command output

    Returns
    -------
    RemoteInstallState
        Parsed state with a details summary
    """
    markers = {line.strip() for line in output.splitlines()}
    state = RemoteInstallState(
        cursor_dir="CURSOR_DIR_EXISTS" in markers,
        vscode_dir="VSCODE_DIR_EXISTS" in markers,
        process_running="SERVER_PROCESS_RUNNING" in markers,
    )

    details = []
    if state.cursor_dir:
        details.append("Cursor server directory exists (~/.cursor-server).")
    if state.vscode_dir:
        details.append("VS Code server directory exists (~/.vscode-server).")
    if state.process_running:
        details.append("Server process is running.")
    state.details = (
        " ".join(details) if details else "No server installation detected on remote host."
    )
    return state


class RemoteChannel:
    """Run short single-purpose commands on the remote host.

    The host is addressed by its SSH alias so the user's ``~/.ssh/config``
    entry, including its ProxyCommand, decides how the transport is set up.

    Parameters
    ----------
    host : str
        SSH host alias
    runner : ProcessRunner | None
        Runner used to launch ssh
    timeout : float
        Seconds allowed for each remote command
    """

    def __init__(
        self,
        host: str,
        runner: ProcessRunner | None = None,
        timeout: float = REMOTE_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.runner = runner or ProcessRunner()
        self.timeout = timeout

    def _ssh_args(self, command: str, connect_timeout: int, verbose: bool = False) -> list[str]:
        args = []
        if verbose:
            args.append("-v")
        args.extend(
            [
                "-o",
                f"ConnectTimeout={connect_timeout}",
                "-o",
                "StrictHostKeyChecking=accept-new",
                self.host,
                command,
            ]
        )
        return args

    def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a command on the remote host.

        Parameters
        ----------
        command : str
            Shell command executed remotely
        timeout : float | None
            Override of the channel timeout

        Returns
        -------
        CommandResult
            Output and exit status of the remote command

        Raises
        ------
        RemoteUnreachable
            If ssh itself failed (exit status 255)
        ToolMissing
            If no ssh client is installed
        CommandTimeout
            If the command does not complete in time
        """
        effective_timeout = timeout or self.timeout
        result = self.runner.run(
            "ssh",
            self._ssh_args(command, connect_timeout=int(effective_timeout)),
            timeout=effective_timeout,
        )

        if result.exit_code == SSH_UNREACHABLE_EXIT_CODE:
            raise RemoteUnreachable(self.host, summarize_error_output(result.stderr))

        for stream, text in (("stdout", result.stdout), ("stderr", result.stderr)):
            for line in text.splitlines():
                logger.debug(line, extra={"stream": stream, "host": self.host})

        return result

    def test_connection(self) -> ConnectionTestResult:
        """Run the verbose initial connection test.

        Returns
        -------
        ConnectionTestResult
            Whether the remote host echoed the expected marker, with the
            relevant lines of ssh's verbose output
        """
        try:
            result = self.runner.run(
                "ssh",
                self._ssh_args(
                    f"echo '{CONNECTION_OK_MARKER}'",
                    connect_timeout=CONNECTION_TEST_TIMEOUT_SECONDS,
                    verbose=True,
                ),
                timeout=self.timeout + CONNECTION_TEST_TIMEOUT_SECONDS,
            )
        except (ToolMissing, CommandTimeout, ExecutionFailed) as e:
            logger.warning("SSH connection test failed: %s", e)
            return ConnectionTestResult(ok=False, output=str(e), failure=classify_failure(e))

        output = result.output
        lines = [
            line.strip()
            for line in output.splitlines()
            if any(
                key in line
                for key in ("Connecting to", "Connection established", "Authenticated", "ProxyCommand")
            )
            or "error" in line.lower()
            or "failed" in line.lower()
        ]

        ok = CONNECTION_OK_MARKER in {line.strip() for line in result.stdout.splitlines()}
        failure = None if ok else classify_failure(None, result.stderr)
        return ConnectionTestResult(ok=ok, output=output, failure=failure, lines=lines[-10:])

    def check_installation(self) -> RemoteInstallState:
        """Inspect the editor server installation on the remote host.

        Expected failures such as an unreachable host or a missing ssh client
        are reported in the returned state rather than raised.

        Returns
        -------
        RemoteInstallState
            Installation state, with ``failure`` set if the host could not be
            observed
        """
        try:
            result = self.execute(INSTALL_CHECK_COMMAND)
        except (RemoteUnreachable, ToolMissing, CommandTimeout, ExecutionFailed) as e:
            detail = e.detail if isinstance(e, RemoteUnreachable) and e.detail else str(e)
            logger.debug("Remote installation check failed: %s", e)
            return RemoteInstallState(
                details=f"Could not check remote server installation: {detail}",
                failure=classify_failure(e, detail),
            )

        return parse_install_markers(result.stdout)

    def list_server_dirs(self) -> CommandResult:
        """List the editor server directories for the monitor's detail line."""
        return self.execute(LIST_SERVER_DIRS_COMMAND)

    def cleanup_server_dirs(self) -> bool:
        """Remove the editor server directories on the remote host.

        Returns
        -------
        bool
            True when the remote side reported success

        Raises
        ------
        RemoteUnreachable
            If ssh could not reach the host
        """
        result = self.execute(CLEANUP_COMMAND)
        markers = {line.strip() for line in result.stdout.splitlines()}
        return "CLEANUP_SUCCESS" in markers
