"""Prerequisite checks for a SageMaker remote session."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from spacelink.constants import AWS_TOOLKIT_EXTENSION_ID, REMOTE_SSH_EXTENSION_IDS
from spacelink.core.interfaces import CommandRunner, ExtensionRegistry
from spacelink.repair.ssh_config import has_host_entry

logger = logging.getLogger(__name__)

AWS_CLI = "aws"
SESSION_MANAGER_PLUGIN = "session-manager-plugin"
REMOTE_SSH_EXTENSION_ID = REMOTE_SSH_EXTENSION_IDS[0]


@dataclass(frozen=True)
class CapabilityReport:
    """Result of one prerequisite probe.

    Attributes
    ----------
    tool_present : Mapping[str, bool]
        Presence of each required command-line tool, read-only
    extension_present : Mapping[str, bool]
        Presence of each editor extension, read-only
    host_entry_present : bool
        Whether the SSH config holds the host alias entry
    errors : tuple[str, ...]
        Missing prerequisites that block a session
    warnings : tuple[str, ...]
        Checks that could not be completed
    """

    tool_present: Mapping[str, bool] = field(default_factory=dict)
    extension_present: Mapping[str, bool] = field(default_factory=dict)
    host_entry_present: bool = False
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_present", MappingProxyType(dict(self.tool_present)))
        object.__setattr__(
            self, "extension_present", MappingProxyType(dict(self.extension_present))
        )

    @property
    def remote_ssh_present(self) -> bool:
        return self.extension_present.get(REMOTE_SSH_EXTENSION_ID, False)

    @property
    def all_passed(self) -> bool:
        return not self.errors and self.remote_ssh_present and self.host_entry_present


class PrerequisiteProbe:
    """Check the local machine for everything a session needs.

    Each check runs on its own; a failing check is recorded in the report and
    never prevents the remaining checks from running.

    Parameters
    ----------
    runner : CommandRunner
        Runner used for tool version checks
    registry : ExtensionRegistry
        Source of installed editor extensions
    ssh_config_path : Path
        SSH client config to look for the host entry in
    host_alias : str
        Host alias expected in the SSH config
    """

    def __init__(
        self,
        runner: CommandRunner,
        registry: ExtensionRegistry,
        ssh_config_path: Path,
        host_alias: str,
    ) -> None:
        self.runner = runner
        self.registry = registry
        self.ssh_config_path = Path(ssh_config_path).expanduser()
        self.host_alias = host_alias

    def check_all(self) -> CapabilityReport:
        """Run every prerequisite check.

        Returns
        -------
        CapabilityReport
            Fresh report of this run
        """
        errors: list[str] = []
        warnings: list[str] = []

        tools = {
            AWS_CLI: self._check_aws_cli(),
            SESSION_MANAGER_PLUGIN: self._check_plugin(),
        }
        if not tools[AWS_CLI]:
            errors.append("AWS CLI not found")
        if not tools[SESSION_MANAGER_PLUGIN]:
            errors.append("Session Manager Plugin not found")

        extensions = {
            REMOTE_SSH_EXTENSION_ID: self._check_extension(REMOTE_SSH_EXTENSION_IDS, warnings),
            AWS_TOOLKIT_EXTENSION_ID: self._check_extension(
                (AWS_TOOLKIT_EXTENSION_ID,), warnings
            ),
        }

        host_entry = self._check_host_entry(warnings)

        report = CapabilityReport(
            tool_present=tools,
            extension_present=extensions,
            host_entry_present=host_entry,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        logger.debug("Prerequisite report: %s", report)
        return report

    def _check_aws_cli(self) -> bool:
        return self.runner.is_available(AWS_CLI)

    def _check_plugin(self) -> bool:
        resolved = self.runner.resolve(SESSION_MANAGER_PLUGIN)
        if os.path.isabs(resolved) and os.path.exists(resolved):
            return True
        return self.runner.is_available(SESSION_MANAGER_PLUGIN)

    def _check_extension(self, extension_ids: tuple[str, ...], warnings: list[str]) -> bool:
        for extension_id in extension_ids:
            try:
                if self.registry.is_installed(extension_id):
                    return True
            except Exception as e:
                logger.warning("Could not check extension %s: %s", extension_id, e)
                warnings.append(f"Could not check extension {extension_id}: {e}")
                return False
        return False

    def _check_host_entry(self, warnings: list[str]) -> bool:
        try:
            text = self.ssh_config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", self.ssh_config_path, e)
            warnings.append(f"Could not read SSH config {self.ssh_config_path}: {e}")
            return False
        return has_host_entry(text, self.host_alias)
