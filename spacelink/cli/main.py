"""CLI entry point for spacelink."""

from __future__ import annotations

import logging
import os
import sys

import fire
import paramiko

from spacelink.core.errors import (
    RemoteUnreachable,
    SpaceLinkError,
    StructuralValidationFailed,
    ToolMissing,
)
from spacelink.logging import StreamFormatter, StreamRoutingFilter

TOOL_INSTALL_HINTS = {
    "aws": "https://aws.amazon.com/cli/",
    "session-manager-plugin": "spacelink install_plugin",
    "ssh": "Install the OpenSSH client (Windows: Settings > Optional features > OpenSSH Client)",
}


def get_spacelink_class() -> type:
    """Get the SpaceLink command class on demand to avoid circular imports.

    Returns
    -------
    type
        SpaceLink command class
    """
    from spacelink.__main__ import SpaceLink

    return SpaceLink


def handle_value_error(error: ValueError, debug_mode: bool) -> None:
    """Handle configuration errors.

    Parameters
    ----------
    error : ValueError
        The value error that was raised
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    ValueError
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print(f"Configuration error: {error}", file=sys.stderr)
    sys.exit(2)


def handle_tool_missing(error: ToolMissing, debug_mode: bool) -> None:
    """Handle a missing executable with install instructions.

    Parameters
    ----------
    error : ToolMissing
        The error naming the missing tool
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    ToolMissing
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print(f"{error.tool} not found\n", file=sys.stderr)
    hint = TOOL_INSTALL_HINTS.get(error.tool)
    if hint:
        print("Fix it:", file=sys.stderr)
        print(f"  {hint}", file=sys.stderr)
    else:
        print(f"Make sure {error.tool} is installed and on your PATH.", file=sys.stderr)
    sys.exit(1)


def handle_ssh_error(error: Exception, debug_mode: bool) -> None:
    """Handle SSH connectivity errors.

    Parameters
    ----------
    error : Exception
        The connectivity error that was raised
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    RemoteUnreachable, OSError, paramiko.SSHException
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print("SSH connectivity error\n", file=sys.stderr)
    print(f"  {error}\n", file=sys.stderr)
    print("This usually means:", file=sys.stderr)
    print("  - The local server is not running", file=sys.stderr)
    print("  - The space is stopped or still starting", file=sys.stderr)
    print("  - The SSH entry or connection script is misconfigured\n", file=sys.stderr)
    print("Debugging steps:", file=sys.stderr)
    print("  1. spacelink status", file=sys.stderr)
    print("  2. spacelink diagnose", file=sys.stderr)
    print("  3. spacelink debug_ssh_config", file=sys.stderr)
    sys.exit(1)


def handle_validation_error(error: StructuralValidationFailed, debug_mode: bool) -> None:
    """Handle a repair that was refused by structural validation.

    Parameters
    ----------
    error : StructuralValidationFailed
        The validation failure
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    StructuralValidationFailed
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print("Repair refused, the result failed validation:", file=sys.stderr)
    for violation in error.violations:
        print(f"  - {violation}", file=sys.stderr)
    print("\nThe file was left unchanged.", file=sys.stderr)
    if error.backup:
        print(f"A backup was written to {error.backup}", file=sys.stderr)
    print("To go back to the last good version: spacelink restore_script", file=sys.stderr)
    sys.exit(1)


def handle_spacelink_error(error: SpaceLinkError, debug_mode: bool) -> None:
    if debug_mode:
        raise

    print(f"Error: {error}", file=sys.stderr)
    sys.exit(1)


def handle_runtime_error(error: RuntimeError, debug_mode: bool) -> None:
    """Handle unexpected runtime error.

    Parameters
    ----------
    error : RuntimeError
        The runtime error that was raised
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    RuntimeError
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print(f"Unexpected error: {error}", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    """Entry point for the Fire CLI with graceful error handling.

    Fire maps the public methods of ``SpaceLink`` to commands. Known
    failures are turned into short messages and exit codes; set
    ``SPACELINK_DEBUG=1`` to get the traceback instead.
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(StreamFormatter("%(message)s"))
    stdout_handler.addFilter(StreamRoutingFilter("stdout"))

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(StreamFormatter("%(message)s"))
    stderr_handler.addFilter(StreamRoutingFilter("stderr"))

    debug_mode = os.environ.get("SPACELINK_DEBUG") == "1"

    logging.basicConfig(
        level=logging.DEBUG if debug_mode else logging.INFO,
        handlers=[stdout_handler, stderr_handler],
    )

    try:
        fire.Fire(get_spacelink_class())
    except ValueError as e:
        handle_value_error(e, debug_mode)
    except ToolMissing as e:
        handle_tool_missing(e, debug_mode)
    except StructuralValidationFailed as e:
        handle_validation_error(e, debug_mode)
    except (RemoteUnreachable, OSError, paramiko.SSHException) as e:
        handle_ssh_error(e, debug_mode)
    except SpaceLinkError as e:
        handle_spacelink_error(e, debug_mode)
    except RuntimeError as e:
        handle_runtime_error(e, debug_mode)
