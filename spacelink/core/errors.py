"""Exception hierarchy and failure classification."""

from __future__ import annotations

from spacelink.constants import FailureKind


class SpaceLinkError(Exception):
    """Base class for all spacelink errors."""


class ToolMissing(SpaceLinkError):
    """Raised when a required executable cannot be found.

    Parameters
    ----------
    tool : str
        Name of the missing executable
    """

    def __init__(self, tool: str, message: str | None = None) -> None:
        self.tool = tool
        super().__init__(message or f"{tool} not found")


class CommandTimeout(SpaceLinkError):
    """Raised when an external command exceeds its timeout.

    Parameters
    ----------
    command : str
        Command that timed out
    timeout : float
        Timeout in seconds that was exceeded
    """

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"{command} timed out after {timeout}s")


class ExecutionFailed(SpaceLinkError):
    """Raised when an external command could not be launched."""


class ProbeFailed(SpaceLinkError):
    """Raised when a probe could not observe its target."""


class PatchConflict(SpaceLinkError):
    """Raised by a patch rule whose anchor cannot be located in the text."""


class StructuralValidationFailed(SpaceLinkError):
    """Raised when patched text breaks a structural check.

    Parameters
    ----------
    violations : list[str]
        Human readable descriptions of each failed check
    backup : str | None
        Location of the backup holding the pre-patch text
    """

    def __init__(self, violations: list[str], backup: str | None = None) -> None:
        self.violations = violations
        self.backup = backup
        super().__init__("; ".join(violations))


class RemoteUnreachable(SpaceLinkError):
    """Raised when the ssh client itself fails to reach the remote host."""

    def __init__(self, host: str, detail: str = "") -> None:
        self.host = host
        self.detail = detail
        message = f"Cannot reach {host}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def classify_failure(error: BaseException | None, text: str = "") -> FailureKind:
    """Classify a probe failure.

    Structured exception types decide first. Matching on the message text is
    only used when the type says nothing, since tool output wording varies
    between ssh builds and platforms.

    Parameters
    ----------
    error : BaseException | None
        Exception raised by the probe, if any
    text : str
        Additional output captured from the failed command

    Returns
    -------
    FailureKind
        Classified failure kind
    """
    if isinstance(error, ToolMissing | FileNotFoundError):
        return FailureKind.TOOL_MISSING
    if isinstance(error, CommandTimeout | TimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(error, ConnectionRefusedError):
        return FailureKind.CONNECTION_REFUSED

    haystack = f"{error or ''} {text}".lower()
    if "timed out" in haystack or "timeout" in haystack:
        return FailureKind.TIMEOUT
    if "refused" in haystack:
        return FailureKind.CONNECTION_REFUSED
    if "not found" in haystack or "not recognized" in haystack:
        return FailureKind.TOOL_MISSING
    return FailureKind.UNKNOWN
