"""External command execution."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import threading
from collections.abc import Sequence
from dataclasses import dataclass

from spacelink.constants import VERSION_CHECK_TIMEOUT_SECONDS, WINDOWS_BINARY_CANDIDATES
from spacelink.core.errors import CommandTimeout, ExecutionFailed, ToolMissing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Captured result of an external command.

    Attributes
    ----------
    stdout : str
        Captured standard output
    stderr : str
        Captured standard error
    exit_code : int
        Process exit status
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Standard output followed by standard error."""
        return self.stdout + self.stderr


class ProcessRunner:
    """Run external commands and resolve executables.

    Non-zero exits are data, not errors: ``run`` returns them in the
    ``CommandResult``. Only failures to launch or to finish in time raise.

    Executable resolution on Windows checks well-known install locations
    before PATH, since OpenSSH and the Session Manager plugin are frequently
    installed outside PATH there. Resolved paths are cached for the lifetime
    of the process.
    """

    _resolved: dict[str, str] = {}
    _resolve_lock = threading.Lock()

    def __init__(self, platform: str | None = None) -> None:
        self.platform = platform or sys.platform

    @classmethod
    def clear_cache(cls) -> None:
        """Forget all resolved executable paths."""
        with cls._resolve_lock:
            cls._resolved.clear()

    def resolve(self, name: str) -> str:
        """Resolve an executable name to the path that will be launched.

        Parameters
        ----------
        name : str
            Executable name such as ``ssh``

        Returns
        -------
        str
            Absolute path when one was found, otherwise the bare name
        """
        if os.path.isabs(name):
            return name

        cache_key = f"{self.platform}:{name}"
        with self._resolve_lock:
            cached = self._resolved.get(cache_key)
            if cached is not None:
                return cached

            resolved = self._lookup(name)
            self._resolved[cache_key] = resolved

        logger.debug("Resolved %s to %s", name, resolved)
        return resolved

    def _lookup(self, name: str) -> str:
        if self.platform == "win32":
            for candidate in WINDOWS_BINARY_CANDIDATES.get(name, ()):
                if os.path.exists(candidate):
                    return candidate

        found = shutil.which(name)
        return found or name

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Parameters
        ----------
        command : str
            Executable name or path
        args : Sequence[str]
            Arguments passed to the executable
        timeout : float | None
            Seconds to wait before giving up, None for no limit
        input_text : str | None
            Text written to the command's standard input

        Returns
        -------
        CommandResult
            Captured output and exit status, whatever the exit status

        Raises
        ------
        ToolMissing
            If the executable does not exist
        CommandTimeout
            If the command does not finish within ``timeout``
        ExecutionFailed
            If the operating system refuses to launch the command
        """
        executable = self.resolve(command)
        argv = [executable, *args]
        logger.debug("Running %s", " ".join(argv))

        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                input=input_text,
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolMissing(command) from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(command, timeout or 0) from e
        except OSError as e:
            raise ExecutionFailed(f"Failed to run {command}: {e}") from e

        return CommandResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )

    def spawn(self, command: str, args: Sequence[str] = ()) -> subprocess.Popen:
        """Start a long-running command in the background.

        Parameters
        ----------
        command : str
            Executable name or path
        args : Sequence[str]
            Arguments passed to the executable

        Returns
        -------
        subprocess.Popen
            Handle of the detached process

        Raises
        ------
        ToolMissing
            If the executable does not exist
        ExecutionFailed
            If the operating system refuses to launch the command
        """
        argv = [self.resolve(command), *args]
        logger.debug("Spawning %s", " ".join(argv))

        kwargs: dict = {}
        if self.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
                subprocess, "CREATE_NEW_PROCESS_GROUP", 0
            )
        else:
            kwargs["start_new_session"] = True

        try:
            return subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise ToolMissing(command) from e
        except OSError as e:
            raise ExecutionFailed(f"Failed to start {command}: {e}") from e

    def is_available(self, command: str, version_flag: str = "--version") -> bool:
        """Check whether a command runs and reports its version.

        Parameters
        ----------
        command : str
            Executable name or path
        version_flag : str
            Flag that makes the tool print its version and exit

        Returns
        -------
        bool
            True when the command exits successfully
        """
        try:
            result = self.run(command, [version_flag], timeout=VERSION_CHECK_TIMEOUT_SECONDS)
        except (ToolMissing, CommandTimeout, ExecutionFailed) as e:
            logger.debug("%s unavailable: %s", command, e)
            return False
        return result.ok
