"""Local toolkit server status."""

from __future__ import annotations

import json
import logging
import os
import shlex
import socket
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import requests

from spacelink.constants import (
    HTTP_READY_DELAY_SECONDS,
    HTTP_READY_ENDPOINTS,
    HTTP_READY_RETRIES,
    SERVER_INFO_FILENAME,
)
from spacelink.core.errors import CommandTimeout, ExecutionFailed, ToolMissing
from spacelink.services.process import ProcessRunner

logger = logging.getLogger(__name__)

PORT_CHECK_TIMEOUT_SECONDS = 1.0


@dataclass
class ServerInfo:
    """Snapshot of the local server derived from its descriptor file.

    Attributes
    ----------
    pid : int | None
        Process id from the descriptor
    port : int | None
        Listening port from the descriptor
    running : bool
        True when the process is alive and the port accepts connections
    accessible : bool
        True when the port accepts connections
    error : str | None
        Why the server is not running, if it is not
    """

    pid: int | None = None
    port: int | None = None
    running: bool = False
    accessible: bool = False
    error: str | None = None


class LocalServerProbe:
    """Probe the local server that brokers SageMaker sessions.

    The toolkit writes ``{"pid": ..., "port": ...}`` to a descriptor in its
    storage directory when the server starts. Every call re-reads it.

    Parameters
    ----------
    storage_dir : Path
        Toolkit global storage directory
    runner : ProcessRunner | None
        Runner used for Windows process lookups and start commands
    start_command : str | None
        Optional command that starts the server
    """

    def __init__(
        self,
        storage_dir: Path,
        runner: ProcessRunner | None = None,
        start_command: str | None = None,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.runner = runner or ProcessRunner()
        self.start_command = start_command

    @property
    def info_path(self) -> Path:
        return self.storage_dir / SERVER_INFO_FILENAME

    def ensure_storage_dir(self) -> bool:
        """Create the storage directory if missing.

        Returns
        -------
        bool
            True if the directory was created
        """
        if self.storage_dir.is_dir():
            return False
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Created storage directory %s", self.storage_dir)
        return True

    def read_descriptor(self) -> tuple[int, int] | None:
        """Read pid and port from the descriptor file, None if unusable."""
        try:
            data = json.loads(self.info_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s: %s", self.info_path, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Server info %s is not an object", self.info_path)
            return None

        pid, port = data.get("pid"), data.get("port")
        if not isinstance(pid, int) or not isinstance(port, int):
            logger.warning("Server info %s has no valid pid/port", self.info_path)
            return None
        return pid, port

    def check(self) -> ServerInfo:
        """Probe the server now.

        Returns
        -------
        ServerInfo
            Derived status, never cached
        """
        if not self.info_path.exists():
            return ServerInfo(error="Server info file not found")

        descriptor = self.read_descriptor()
        if descriptor is None:
            return ServerInfo(error="Server info file is invalid")

        pid, port = descriptor
        info = ServerInfo(pid=pid, port=port)

        if not self.is_process_running(pid):
            info.error = "Process not running"
            return info

        info.accessible = self.is_port_accessible(port)
        if not info.accessible:
            info.error = "Server not accessible on port"
            return info

        info.running = True
        return info

    def is_process_running(self, pid: int) -> bool:
        if sys.platform == "win32":
            try:
                result = self.runner.run("tasklist", ["/FI", f"PID eq {pid}"], timeout=10)
            except (ToolMissing, CommandTimeout, ExecutionFailed) as e:
                logger.debug("tasklist failed: %s", e)
                return False
            return str(pid) in result.stdout and "INFO: No tasks" not in result.stdout

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True

    def is_port_accessible(self, port: int, host: str = "127.0.0.1") -> bool:
        try:
            with socket.create_connection((host, port), timeout=PORT_CHECK_TIMEOUT_SECONDS):
                return True
        except OSError:
            return False

    def wait_for_http_ready(
        self,
        port: int,
        retries: int = HTTP_READY_RETRIES,
        delay: float = HTTP_READY_DELAY_SECONDS,
    ) -> bool:
        """Wait until the server's HTTP stack answers.

        Any HTTP response counts, including error statuses; only a failure to
        connect means the server is not ready yet.

        Parameters
        ----------
        port : int
            Local server port
        retries : int
            Rounds over all candidate endpoints
        delay : float
            Seconds between rounds

        Returns
        -------
        bool
            True once any endpoint responds
        """
        for attempt in range(retries):
            for endpoint in HTTP_READY_ENDPOINTS:
                url = f"http://localhost:{port}{endpoint}"
                try:
                    requests.get(url, timeout=2)
                    return True
                except requests.exceptions.ConnectionError:
                    continue
                except requests.exceptions.RequestException as e:
                    logger.debug("HTTP readiness probe %s failed: %s", url, e)
                    continue

            if attempt < retries - 1:
                time.sleep(delay)

        return False

    def start(self) -> bool:
        """Launch the configured start command.

        Returns
        -------
        bool
            True if a start command was launched, False if none is configured
            or it could not be launched
        """
        if not self.start_command:
            return False

        argv = shlex.split(self.start_command, posix=sys.platform != "win32")
        if not argv:
            return False

        try:
            self.runner.spawn(argv[0], argv[1:])
        except (ToolMissing, ExecutionFailed) as e:
            logger.warning("Could not start local server: %s", e)
            return False

        logger.info("Started local server with: %s", self.start_command)
        return True
