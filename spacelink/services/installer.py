"""Session Manager plugin installer."""

from __future__ import annotations

import logging
import sys
import tempfile
from pathlib import Path

import requests

from spacelink.constants import (
    INSTALLER_TIMEOUT_SECONDS,
    PLUGIN_INSTALLER_SILENT_FLAG,
    PLUGIN_INSTALLER_URL,
)
from spacelink.core.errors import ExecutionFailed
from spacelink.services.process import ProcessRunner

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class PluginInstaller:
    """Fetch and run the Session Manager plugin installer.

    Parameters
    ----------
    runner : ProcessRunner | None
        Runner used to launch the installer
    url : str
        Installer download location
    download_dir : Path | None
        Where the installer is saved, the system temp dir by default
    platform : str | None
        Platform override, ``sys.platform`` by default
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        url: str = PLUGIN_INSTALLER_URL,
        download_dir: Path | None = None,
        platform: str | None = None,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.url = url
        self.download_dir = Path(download_dir or tempfile.gettempdir())
        self.platform = platform or sys.platform

    @property
    def supported(self) -> bool:
        return self.platform == "win32"

    def download(self) -> Path:
        """Download the installer.

        Returns
        -------
        Path
            Location of the downloaded installer

        Raises
        ------
        ExecutionFailed
            If the download fails
        """
        target = self.download_dir / Path(self.url).name
        logger.info("Downloading Session Manager plugin from %s", self.url)

        try:
            with requests.get(self.url, stream=True, timeout=30) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
        except requests.exceptions.RequestException as e:
            raise ExecutionFailed(f"Failed to download plugin installer: {e}") from e
        except OSError as e:
            raise ExecutionFailed(f"Failed to save plugin installer to {target}: {e}") from e

        return target

    def install(self) -> None:
        """Download and silently run the installer.

        Raises
        ------
        ExecutionFailed
            If the platform has no automatic installer, or the download or the
            installer fails
        """
        if not self.supported:
            raise ExecutionFailed(
                "Automatic Session Manager plugin install is only available on Windows. "
                "See https://docs.aws.amazon.com/systems-manager/latest/userguide/"
                "session-manager-working-with-install-plugin.html"
            )

        installer = self.download()
        result = self.runner.run(
            str(installer), [PLUGIN_INSTALLER_SILENT_FLAG], timeout=INSTALLER_TIMEOUT_SECONDS
        )
        if not result.ok:
            raise ExecutionFailed(
                f"Plugin installer exited with status {result.exit_code}: {result.stderr.strip()}"
            )

        logger.info("Session Manager plugin installed")
