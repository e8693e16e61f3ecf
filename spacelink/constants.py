"""Global constants for spacelink.

This module contains values shared by the probes, the repair rules and the
connection monitor. Paths and identifiers here mirror what the AWS Toolkit
extension generates on the local machine.
"""

from enum import Enum

DEFAULT_HOST_ALIAS = "sagemaker"
"""SSH host alias used for the SageMaker space connection."""

REMOTE_USER = "sagemaker-user"
"""Login user on SageMaker spaces."""

MONITOR_INTERVAL_SECONDS = 5
"""Delay between connection monitor ticks in seconds."""

MONITOR_MAX_CHECKS = 60
"""Number of monitor ticks before a session times out.

With the default interval this bounds a monitoring session to five minutes.
"""

REMOTE_COMMAND_TIMEOUT_SECONDS = 10
"""Timeout for short remote probe commands issued over SSH."""

CONNECTION_TEST_TIMEOUT_SECONDS = 5
"""SSH ConnectTimeout used by the verbose initial connection test."""

VERSION_CHECK_TIMEOUT_SECONDS = 5
"""Timeout in seconds for local tool version checks."""

INSTALLER_TIMEOUT_SECONDS = 300
"""Timeout for downloading and running the Session Manager plugin installer."""

CANONICAL_RETRY_COUNT = 10
"""Number of attempts the repaired connection script makes to fetch session info."""

SSH_UNREACHABLE_EXIT_CODE = 255
"""Exit status the ssh client reserves for its own connection failures."""

HTTP_READY_RETRIES = 5
"""Attempts made when waiting for the local server HTTP stack."""

HTTP_READY_DELAY_SECONDS = 2
"""Delay between HTTP readiness attempts."""

HTTP_READY_ENDPOINTS = ("/health", "/status", "/", "/api/health")
"""Paths tried against the local server when checking HTTP readiness."""

SERVER_INFO_FILENAME = "sagemaker-local-server-info.json"
"""Descriptor written by the toolkit's local server: {"pid": int, "port": int}."""

CONNECT_SCRIPT_FILENAME = "sagemaker_connect.ps1"
"""Connection script invoked by the SSH ProxyCommand."""

TOOLKIT_STORAGE_SUBPATH = ("User", "globalStorage", "amazonwebservices.aws-toolkit-vscode")
"""Path segments of the toolkit storage directory below the editor user dir."""

SPACE_PROFILES_PATH = "~/.aws/.sagemaker-space-profiles"
"""Mapping of space ARNs to AWS profiles maintained by the toolkit."""

KNOWN_HOSTS_STALE_MARKER = "sm_lc_arn"
"""Substring identifying host keys written for SageMaker space connections."""

REMOTE_SERVER_DIRS = ("~/.cursor-server", "~/.vscode-server")
"""Directories the editors install their remote server into."""

PLUGIN_INSTALLER_URL = (
    "https://s3.amazonaws.com/session-manager-downloads/plugin/latest/windows/"
    "SessionManagerPluginSetup.exe"
)
"""Download location of the Windows Session Manager plugin installer."""

PLUGIN_INSTALLER_SILENT_FLAG = "/S"
"""Flag running the plugin installer without prompts."""

AWS_CLI_INSTALL_URL = "https://aws.amazon.com/cli/"
"""Where to point users who have no AWS CLI."""

WINDOWS_BINARY_CANDIDATES: dict[str, tuple[str, ...]] = {
    "ssh": (
        r"C:\Windows\System32\OpenSSH\ssh.exe",
        r"C:\Program Files\OpenSSH\ssh.exe",
        r"C:\Program Files\Git\usr\bin\ssh.exe",
    ),
    "session-manager-plugin": (
        r"C:\Program Files\Amazon\SessionManagerPlugin\bin\session-manager-plugin.exe",
    ),
}
"""Well-known install locations checked before PATH lookup on Windows."""

REMOTE_SSH_EXTENSION_IDS = ("ms-vscode-remote.remote-ssh", "anysphere.remote-ssh")
"""Extension identifiers providing Remote-SSH, either of which satisfies the check."""

AWS_TOOLKIT_EXTENSION_ID = "amazonwebservices.aws-toolkit-vscode"
"""AWS Toolkit extension identifier."""

REQUIRED_TOOLS = ("aws", "session-manager-plugin")
"""Local command-line tools required for a session."""


class Editor(str, Enum):
    """Editor whose user directory holds the toolkit storage."""

    CURSOR = "cursor"
    CODE = "code"

    @property
    def dirname(self) -> str:
        """Directory name of the editor's user data."""
        return "Cursor" if self is Editor.CURSOR else "Code"


class MonitorState(str, Enum):
    """Connection monitor session states."""

    IDLE = "idle"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (MonitorState.SUCCEEDED, MonitorState.TIMED_OUT, MonitorState.CANCELLED)


class FailureKind(str, Enum):
    """Classification of probe failures."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    TOOL_MISSING = "tool_missing"
    UNKNOWN = "unknown"


class StepStatus(str, Enum):
    """Outcome of one orchestrated workflow step."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
